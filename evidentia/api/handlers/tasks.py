"""Task execution endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from evidentia.api.models.errors import service_unavailable_error
from evidentia.api.models.tasks import TaskResult, TaskSubmission
from evidentia.core.pipeline import GenerationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["tasks"])


def get_pipeline(request: Request) -> GenerationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=503,
            detail=service_unavailable_error("Pipeline is not initialized").model_dump(),
        )
    return pipeline


@router.post("/tasks", response_model=TaskResult)
async def run_task(
    submission: TaskSubmission,
    request: Request,
    response: Response,
    pipeline: GenerationPipeline = Depends(get_pipeline),
) -> TaskResult:
    """Run one task through the pipeline.

    The HTTP status is 200 for every terminal state; ``state`` in the body
    tells completed, needs_review and failed apart.
    """
    task_request = submission.to_request(getattr(request.state, "request_id", None))
    logger.info(
        f"Task submitted: type={submission.task_type.value}, "
        f"user={submission.user_id}, consensus={submission.consensus_candidates}"
    )

    result = await pipeline.run(task_request)

    response.headers["X-Task-State"] = result.state.value
    return TaskResult.from_response(result)
