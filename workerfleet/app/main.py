from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from workerfleet.app.core.config import settings
from workerfleet.app.core.db import create_db_and_tables
from workerfleet.app.core.logging_config import setup_logging
from workerfleet.app.api import job
import logging

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    create_db_and_tables()
    recovered = job.get_executor().recover_interrupted_jobs()
    if recovered:
        logger.warning(f"Settled {recovered} job(s) interrupted by a previous shutdown")
    yield

app = FastAPI(lifespan=lifespan, title=settings.PROJECT_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify the frontend origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(job.router)

@app.get("/")
def read_root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}
