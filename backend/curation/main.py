import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from curation import models  # noqa: F401
from curation.core.config import settings
from curation.core.db_read_write import write_engine
from curation.core.ingestion import recover_interrupted
from curation.core.search_index import get_index_worker, shutdown_index_worker
from curation.db import Base
from curation.routers import answers, datasets, questions, reports, search


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Dataset Curation Pipeline", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(datasets.router, prefix="/api/datasets")
app.include_router(questions.router, prefix="/api/questions")
app.include_router(answers.router, prefix="/api/answers")
app.include_router(search.router, prefix="/api/search")
app.include_router(reports.router, prefix="/api/bias-reports")


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=write_engine)
    get_index_worker().start()
    recovered = recover_interrupted()
    if recovered:
        logger.warning("marked interrupted datasets as failed: %s", recovered)
    logger.info("curation api started: classifier=%s", settings.CLASSIFIER_BACKEND)


@app.on_event("shutdown")
def shutdown_event():
    shutdown_index_worker()


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "index_worker": get_index_worker().is_running,
    }
