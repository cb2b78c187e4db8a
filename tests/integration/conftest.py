from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from task_lifecycle.storage.postgres import PostgresTaskStore


@pytest.fixture
def pg_store() -> Iterator[PostgresTaskStore]:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and TASK_LIFECYCLE_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("TASK_LIFECYCLE_DATABASE_URL")
    if not database_url:
        pytest.skip("TASK_LIFECYCLE_DATABASE_URL is required for integration tests.")

    store = PostgresTaskStore(database_url)
    store.migrate()
    with store._session() as conn:
        conn.execute("TRUNCATE tasks CASCADE")
        conn.commit()
    yield store
