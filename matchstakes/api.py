from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import configure_logging
from .services.exceptions import ServiceError
from .storage import invalidate_cache

configure_logging()

# ensure cached balances do not leak across reloads
invalidate_cache()

app = FastAPI(title="matchstakes")


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request, exc):
    return JSONResponse(status_code=400, content={"detail": exc.errors()})


@app.exception_handler(ServiceError)
def service_error_handler(request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


from .routes.invitations import router as invitations_router
from .routes.players import router as players_router
from .routes.rewards import router as rewards_router

app.include_router(invitations_router)
app.include_router(players_router)
app.include_router(rewards_router)


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
