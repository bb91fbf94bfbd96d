"""FastAPI dependencies shared by the API routes."""

from fastapi import Request

from mediagen.services.generation.orchestrator import GenerationOrchestrator


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Get the GenerationOrchestrator from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(orchestrator=Depends(get_orchestrator)):
        ...     return orchestrator.list_jobs()
    """
    return request.app.state.orchestrator
