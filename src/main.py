import logging
import os

from fastapi import FastAPI

from src.api.routes.routes import router
from src.infrastructure.db.session import engine, wait_for_database
from src.infrastructure.db.models import Base

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Experience Booking Core")

app.include_router(router)


@app.on_event("startup")
def on_startup() -> None:
    # The API may come up before Postgres does.
    wait_for_database()
    Base.metadata.create_all(bind=engine)
