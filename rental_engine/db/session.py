import os

from .factory import build_engine, build_session_factory


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_ENGINE_DB_URL = _require_env("RENTAL_ENGINE_DB_URL")

engine_rental = build_engine(RENTAL_ENGINE_DB_URL)

SessionLocalRental = build_session_factory(engine_rental)
