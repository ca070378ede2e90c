import os
import tempfile
from pathlib import Path

# Settings and the engine are built at import time, so the test database has to be set first.
_DB_PATH = Path(tempfile.gettempdir()) / f"carbitrage-tests-{os.getpid()}.sqlite3"
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["REQUEST_DELAY_SECONDS"] = "0"
os.environ.pop("SLACK_WEBHOOK_URL", None)

import pytest  # noqa: E402

from backend.carbitrage.db import models  # noqa: E402
from backend.carbitrage.db.session import ENGINE, session_scope  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _schema():
    models.Base.metadata.create_all(ENGINE)
    yield
    models.Base.metadata.drop_all(ENGINE)
    ENGINE.dispose()
    _DB_PATH.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def _clean_tables():
    with session_scope() as session:
        for table in reversed(models.Base.metadata.sorted_tables):
            session.execute(table.delete())
    yield
