from fastapi import FastAPI

from .participant import router as participant_router
from .rounds import router as rounds_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(participant_router, tags=["participant"])
    app.include_router(rounds_router, tags=["admin"])


__all__ = ["include_modular_routers"]
