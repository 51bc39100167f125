import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import ALLOWED_ORIGINS, MIGRATIONS_DIR
from .database import SessionLocal
from .errors import InvalidInput, InvalidStateTransition, NotFound, RoundEngineError, StoreUnavailable
from .routes import include_modular_routers

logger = logging.getLogger(__name__)


def _migrations_dir() -> Path:
    docker_dir = Path("/app/migrations")
    local_dir = Path(__file__).resolve().parents[1] / "migrations"

    if MIGRATIONS_DIR:
        migrations_dir = Path(MIGRATIONS_DIR)
    elif docker_dir.exists():
        migrations_dir = docker_dir
    else:
        migrations_dir = local_dir

    if not migrations_dir.exists() or not migrations_dir.is_dir():
        raise FileNotFoundError(
            "Migrations directory not found. Checked: "
            f"MIGRATIONS_DIR={MIGRATIONS_DIR or '<unset>'}, {docker_dir}, {local_dir}"
        )
    return migrations_dir


def _statements(sql: str) -> list[str]:
    out = []
    for chunk in sql.split(";"):
        body = "\n".join(line for line in chunk.splitlines() if not line.strip().startswith("--")).strip()
        if body:
            out.append(body)
    return out


def run_migrations(session_factory=None) -> None:
    session_factory = session_factory or SessionLocal
    migrations_dir = _migrations_dir()
    files = sorted([f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql"])
    with session_factory() as db:
        for fname in files:
            sql = (migrations_dir / fname).read_text(encoding="utf-8")
            for statement in _statements(sql):
                db.execute(text(statement))
        db.commit()
    logger.info("Applied %s migration file(s) from %s", len(files), migrations_dir)


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@asynccontextmanager
async def lifespan(app: FastAPI):
    wait_for_db()
    run_migrations()
    yield


app = FastAPI(title="Round Match API", lifespan=lifespan)
include_modular_routers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES: dict[type[RoundEngineError], int] = {
    InvalidInput: 400,
    NotFound: 404,
    InvalidStateTransition: 409,
    StoreUnavailable: 503,
}


@app.exception_handler(RoundEngineError)
async def round_engine_error_handler(request: Request, exc: RoundEngineError) -> JSONResponse:
    status_code = 500
    for cls, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, cls):
            status_code = code
            break
    if status_code >= 500:
        logger.warning("[API] %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
