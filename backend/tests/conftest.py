import os
from pathlib import Path
import tempfile

_TMP_DIR = Path(tempfile.mkdtemp(prefix="curation-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'curation.db'}"
os.environ.pop("DATABASE_WRITE_URL", None)
os.environ.pop("DATABASE_READ_URL", None)
os.environ["CLASSIFIER_BACKEND"] = "keyword"
os.environ["INDEX_ACK_TIMEOUT_SECONDS"] = "10"

import pytest  # noqa: E402

from curation import models  # noqa: E402
from curation.core.classifier import ClassifierService, KeywordClassifier  # noqa: E402
from curation.core.db_read_write import WriteSessionLocal, write_engine  # noqa: E402
from curation.core.ingestion import IngestionPipeline  # noqa: E402
from curation.core.search_index import IndexWorker  # noqa: E402
from curation.db import Base  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=write_engine)
    Base.metadata.create_all(bind=write_engine)
    yield


@pytest.fixture
def db():
    session = WriteSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def index_worker():
    worker = IndexWorker()
    worker.start()
    yield worker
    worker.stop()


@pytest.fixture
def classifier():
    return ClassifierService(KeywordClassifier(), max_retries=0, backoff_seconds=0.0)


@pytest.fixture
def pipeline(classifier, index_worker):
    def build(**kwargs) -> IngestionPipeline:
        kwargs.setdefault("classifier", classifier)
        kwargs.setdefault("index_worker", index_worker)
        return IngestionPipeline(**kwargs)

    return build


@pytest.fixture
def make_dataset(db):
    counter = {"value": 0}

    def build(**fields) -> models.Dataset:
        counter["value"] += 1
        dataset = models.Dataset(
            name=fields.pop("name", f"dataset-{counter['value']}"),
            fingerprint=fields.pop("fingerprint", f"{counter['value']:064d}"),
            source_format=fields.pop("source_format", models.SourceFormat.json),
            status=fields.pop("status", models.DatasetStatus.indexed),
            meta=fields.pop("meta", {}),
            **fields,
        )
        db.add(dataset)
        db.commit()
        db.refresh(dataset)
        return dataset

    return build
