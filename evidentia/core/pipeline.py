"""Generation pipeline: grounding, generation, validation, verification, consensus and audit."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from evidentia.core.audit_logger import AuditLogger, PipelineTrace
from evidentia.core.consensus import CandidateOutcome, ConsensusEngine
from evidentia.core.grounding import GroundingRetriever
from evidentia.core.llm_connector import GenerationConfig, LLMResponse, ModelGateway
from evidentia.core.prompt_assembler import AssembledPrompt, PromptAssembler
from evidentia.core.validator import OutputValidator
from evidentia.core.verifier import Verifier
from evidentia.lib.config import AppConfig, TaskConfig
from evidentia.lib.errors import ExternalServiceError, VerificationFailure
from evidentia.lib.retry import RetryPolicy, Sleep, retry_async, with_timeout
from evidentia.models.grounding import GroundingResult
from evidentia.models.task import (
    TASK_CATEGORIES,
    PipelineState,
    TaskRequest,
    TaskResponse,
    build_query,
)
from evidentia.models.validation import ValidationResult
from evidentia.models.verification import ConsensusResult, VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class _CandidateRun:
    """One generate/validate/verify pass."""

    response: LLMResponse | None
    validation: ValidationResult
    verification: VerificationResult | None = None
    generation_time_ms: float = 0.0


@dataclass
class _Run:
    """Mutable bookkeeping for one request."""

    trace: PipelineTrace
    started: float
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.PENDING])
    query: str = ""
    data: dict[str, Any] | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def transition(self, state: PipelineState) -> None:
        self.history.append(state)
        self.trace.state = state
        logger.debug(f"Request {self.trace.request_id}: {state.value}")


class GenerationPipeline:
    """Runs one task request through every stage and returns a TaskResponse.

    All collaborators are injected. The pipeline holds no global state, so
    independent requests can run concurrently against one instance.
    """

    def __init__(
        self,
        retriever: GroundingRetriever,
        gateway: ModelGateway,
        audit_logger: AuditLogger,
        config: AppConfig | None = None,
        assembler: PromptAssembler | None = None,
        validator: OutputValidator | None = None,
        verifier: Verifier | None = None,
        consensus: ConsensusEngine | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize pipeline.

        Args:
            retriever: Grounding retriever
            gateway: Model gateway
            audit_logger: Audit logger receiving one entry per request
            config: Resolved application configuration
            assembler: Prompt assembler (default: built from retrieval config)
            validator: Output validator (default: backoff from pipeline config)
            verifier: Verifier (default: critical threshold from pipeline config)
            consensus: Consensus engine (default: critical threshold from pipeline config)
            sleep: Backoff sleep, injectable for tests
        """
        self.config = config or AppConfig()
        self.retriever = retriever
        self.gateway = gateway
        self.audit_logger = audit_logger
        self.sleep = sleep

        pipeline_config = self.config.pipeline
        self.assembler = assembler or PromptAssembler(
            max_context_length=self.config.retrieval.max_context_length,
            include_source_citations=self.config.retrieval.include_source_citations,
        )
        self.validator = validator or OutputValidator(
            RetryPolicy(backoff_base_seconds=pipeline_config.backoff_base_seconds, sleep=sleep)
        )
        self.verifier = verifier or Verifier(pipeline_config.critical_confidence_threshold)
        self.consensus = consensus or ConsensusEngine(pipeline_config.critical_confidence_threshold)

    def _retry_policy(self, task_config: TaskConfig) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=task_config.max_retries,
            backoff_base_seconds=self.config.pipeline.backoff_base_seconds,
            sleep=self.sleep,
        )

    def _candidate_count(self, request: TaskRequest) -> int:
        if request.consensus_candidates is not None:
            return max(1, request.consensus_candidates)
        if self.config.pipeline.enable_consensus:
            return max(1, self.config.pipeline.consensus_candidates)
        return 1

    async def run(self, request: TaskRequest) -> TaskResponse:
        """Process a task request end to end.

        Flow:
        1. Grounding: retrieve and rank evidence for the derived query
        2. Prompt assembly
        3. Generation and validation with bounded retries
        4. Verification of each field against the evidence
        5. Optional consensus over N independent candidates
        6. Audit entry (best-effort)

        Service errors that survive their retries produce a Failed response
        carrying the error message verbatim. Cancellation is recorded as an
        aborted audit entry and then propagated.

        Args:
            request: Task request

        Returns:
            TaskResponse in a terminal state
        """
        task_config = self.config.for_task(request.task_type)
        category = TASK_CATEGORIES[request.task_type]
        gen_config = GenerationConfig.from_task_config(task_config)

        trace = PipelineTrace(
            request=request,
            request_id=request.request_id or str(uuid.uuid4()),
            task_category=category.value,
            model=self.gateway.model_name,
            generation_config=gen_config.to_dict(),
        )
        run = _Run(trace=trace, started=time.time())

        logger.info(
            f"TASK START | request={trace.request_id} | task={request.task_type.value} | "
            f"category={category.value} | user={request.user_id}"
        )

        try:
            await self._execute(run, request, task_config, gen_config)
        except ExternalServiceError as e:
            logger.error(f"Request {trace.request_id} failed: {e}")
            self._fail(run, str(e), type(e).__name__)
        except asyncio.CancelledError:
            logger.warning(f"Request {trace.request_id} cancelled")
            run.transition(PipelineState.ABORTED)
            trace.success = False
            trace.error = "Request cancelled"
            trace.error_type = "Cancelled"
            trace.timings["total"] = (time.time() - run.started) * 1000
            await self.audit_logger.record(trace)
            raise
        except Exception as e:
            logger.error(f"Request {trace.request_id} failed unexpectedly: {e}", exc_info=True)
            self._fail(run, f"Internal error: {e}", type(e).__name__)

        return await self._respond(run)

    async def _execute(
        self,
        run: _Run,
        request: TaskRequest,
        task_config: TaskConfig,
        gen_config: GenerationConfig,
    ) -> None:
        trace = run.trace

        run.transition(PipelineState.GROUNDING)
        run.query = request.query or build_query(request.input)
        grounding = await self.retriever.retrieve(run.query)
        trace.grounding = grounding
        trace.timings["grounding"] = grounding.grounding_time_ms
        if not grounding.sources:
            run.warnings.append("No grounding sources found")
        elif not grounding.has_high_quality_sources:
            run.warnings.append("No high-quality grounding sources found")

        prompt = self.assembler.assemble(request.task_type, request.input, grounding)
        trace.prompt = prompt
        run.metadata["prompt"] = prompt.metrics

        n = self._candidate_count(request)
        if n > 1:
            candidate = await self._run_consensus(run, request, prompt, grounding, task_config, gen_config, n)
            if candidate is None:
                return
        else:
            candidate = await self._run_candidate(
                run, request, prompt, grounding, task_config, gen_config, track=True
            )

        self._apply_candidate(run, candidate)
        self._finalize(run, candidate)

    async def _generate(
        self, prompt: str, gen_config: GenerationConfig, task_config: TaskConfig
    ) -> LLMResponse:
        timeout = self.config.pipeline.call_timeout_seconds

        async def call() -> LLMResponse:
            return await with_timeout(
                self.gateway.generate(prompt, gen_config), timeout, "model_gateway"
            )

        return await retry_async(call, self._retry_policy(task_config))

    def _should_verify(self, grounding: GroundingResult, task_config: TaskConfig) -> bool:
        return bool(grounding.sources) or bool(task_config.critical_fields)

    async def _run_candidate(
        self,
        run: _Run,
        request: TaskRequest,
        prompt: AssembledPrompt,
        grounding: GroundingResult,
        task_config: TaskConfig,
        gen_config: GenerationConfig,
        track: bool,
    ) -> _CandidateRun:
        """Generate, validate and verify one candidate.

        Only a tracked candidate records state transitions, so concurrent
        consensus candidates do not interleave in the state history.
        """

        def transition(state: PipelineState) -> None:
            if track:
                run.transition(state)

        latest: dict[str, Any] = {"response": None, "generation_ms": 0.0, "validation": None}

        def record_attempt(result: ValidationResult) -> None:
            latest["validation"] = result

        async def generate() -> str:
            start = time.time()
            response = await self._generate(prompt.prompt, gen_config, task_config)
            latest["generation_ms"] += (time.time() - start) * 1000
            latest["response"] = response
            return response.content

        async def regenerate() -> str:
            transition(PipelineState.RETRY)
            transition(PipelineState.GENERATING)
            content = await generate()
            transition(PipelineState.VALIDATING)
            return content

        transition(PipelineState.GENERATING)
        raw_output = await generate()

        transition(PipelineState.VALIDATING)
        try:
            validation = await self.validator.validate(
                request.task_type,
                raw_output,
                max_retries=task_config.max_retries,
                confidence_threshold=task_config.confidence_threshold,
                regenerate=regenerate,
                on_attempt=record_attempt,
            )
        except ExternalServiceError:
            if track and latest["validation"] is not None:
                self._keep_partial(
                    run, latest["validation"], latest["response"], latest["generation_ms"]
                )
            raise

        verification = None
        if validation.success and self._should_verify(grounding, task_config):
            transition(PipelineState.VERIFYING)
            verification = self.verifier.verify(
                validation.data,
                grounding.sources,
                critical_fields=task_config.critical_fields,
                validator_confidence=validation.confidence,
                review_threshold=task_config.confidence_threshold,
                request_input=request.input,
            )

        return _CandidateRun(
            response=latest["response"],
            validation=validation,
            verification=verification,
            generation_time_ms=latest["generation_ms"],
        )

    async def _run_consensus(
        self,
        run: _Run,
        request: TaskRequest,
        prompt: AssembledPrompt,
        grounding: GroundingResult,
        task_config: TaskConfig,
        gen_config: GenerationConfig,
        n: int,
    ) -> _CandidateRun | None:
        start = time.time()

        async def generate_candidate(index: int) -> CandidateOutcome:
            candidate = await self._run_candidate(
                run, request, prompt, grounding, task_config, gen_config, track=index == 0
            )
            validation = candidate.validation
            verification = candidate.verification
            confidence = (
                verification.overall_confidence if verification is not None else validation.confidence
            )
            return CandidateOutcome(
                data=validation.data,
                confidence=confidence,
                validation_errors=list(validation.errors),
                requires_human_review=validation.needs_review
                or (verification is not None and verification.requires_human_review),
                payload=candidate,
            )

        outcome = await self.consensus.run(n, generate_candidate)
        run.transition(PipelineState.CONSENSUS)
        run.trace.timings["consensus"] = (time.time() - start) * 1000

        if outcome is None:
            self._fail(run, f"All {n} consensus candidates failed validation", "SchemaViolation")
            return None

        result, outcomes = outcome
        run.trace.consensus = result
        run.metadata["consensus"] = result.to_dict()
        return outcomes[result.selected.candidate_id].payload

    def _apply_candidate(self, run: _Run, candidate: _CandidateRun) -> None:
        trace = run.trace
        validation = candidate.validation

        trace.validation = validation
        trace.verification = candidate.verification
        trace.raw_output = validation.raw_output
        if candidate.response is not None:
            trace.response_tokens = candidate.response.token_count
            trace.function_call = candidate.response.function_call
        trace.timings["generation"] = candidate.generation_time_ms
        trace.timings["validation"] = validation.processing_time_ms
        if candidate.verification is not None:
            trace.timings["verification"] = candidate.verification.verification_time_ms

        run.retry_count = validation.retry_count
        run.warnings.extend(validation.warnings)

    def _keep_partial(
        self,
        run: _Run,
        validation: ValidationResult,
        response: LLMResponse | None,
        generation_ms: float,
    ) -> None:
        """Attach the last scored attempt to the trace before a service error unwinds."""
        self._apply_candidate(
            run,
            _CandidateRun(response=response, validation=validation, generation_time_ms=generation_ms),
        )

    def _finalize(self, run: _Run, candidate: _CandidateRun) -> None:
        trace = run.trace
        validation = candidate.validation
        verification = candidate.verification
        consensus: ConsensusResult | None = trace.consensus

        if not validation.success:
            run.errors.extend(validation.errors)
            self._fail(run, "; ".join(validation.errors), validation.error_type)
            return

        if consensus is not None:
            confidence = consensus.consensus_confidence
        elif verification is not None:
            confidence = verification.overall_confidence
        else:
            confidence = validation.confidence

        requires_review = validation.needs_review
        if verification is not None:
            requires_review = requires_review or verification.requires_human_review
            run.metadata["verification"] = {
                "supported_fields": verification.supported_fields,
                "total_fields": verification.total_fields,
                "confidence": verification.overall_confidence,
            }
            if verification.critical_issues:
                failure = VerificationFailure(verification.critical_issues)
                logger.warning(f"Request {trace.request_id} needs review: {failure}")
                run.critical_issues = list(failure.critical_issues)
                trace.error = str(failure)
                trace.error_type = type(failure).__name__
                requires_review = True
        if consensus is not None:
            requires_review = requires_review or consensus.requires_human_review

        if trace.error_type is None and validation.error_type:
            trace.error_type = validation.error_type

        run.data = validation.data
        trace.success = True
        trace.confidence = max(0.0, min(confidence, 1.0))
        trace.requires_human_review = requires_review
        run.transition(PipelineState.NEEDS_REVIEW if requires_review else PipelineState.COMPLETED)

    def _fail(self, run: _Run, error: str, error_type: str | None) -> None:
        trace = run.trace
        trace.success = False
        trace.confidence = 0.0
        trace.requires_human_review = True
        trace.error = error
        trace.error_type = error_type
        run.data = None
        if not run.errors:
            run.errors.append(error)
        run.transition(PipelineState.FAILED)

    async def _respond(self, run: _Run) -> TaskResponse:
        trace = run.trace
        trace.timings["total"] = (time.time() - run.started) * 1000

        entry = await self.audit_logger.record(trace)

        grounding = trace.grounding
        if grounding is not None:
            run.metadata["grounding"] = {
                "query": run.query,
                "source_count": len(grounding.sources),
                "retrieval_method": grounding.retrieval_method.value,
                "average_relevance": grounding.total_relevance_score,
                "has_high_quality_sources": grounding.has_high_quality_sources,
            }
        run.metadata["timings_ms"] = dict(trace.timings)

        logger.info(
            f"TASK END | request={trace.request_id} | state={trace.state.value} | "
            f"confidence={trace.confidence:.2f} | retries={run.retry_count} | "
            f"time={trace.timings['total']:.0f}ms"
        )

        return TaskResponse(
            request_id=trace.request_id,
            task_type=trace.request.task_type,
            state=trace.state,
            success=trace.success,
            data=run.data,
            confidence=trace.confidence,
            requires_human_review=trace.requires_human_review,
            errors=run.errors,
            warnings=run.warnings,
            critical_issues=run.critical_issues,
            retry_count=run.retry_count,
            error=trace.error if not trace.success else None,
            raw_output=trace.raw_output,
            audit_entry_id=entry.id if entry else None,
            state_history=list(run.history),
            metadata=run.metadata,
        )

    async def close(self) -> None:
        await self.gateway.close()
