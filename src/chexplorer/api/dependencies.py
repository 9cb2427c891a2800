from fastapi import Request

from chexplorer.coordinator import PlacementCoordinator


def get_coordinator(request: Request) -> PlacementCoordinator:
    """Retrieve the configured PlacementCoordinator from FastAPI app state."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise RuntimeError("Placement coordinator is not configured")
    return coordinator
