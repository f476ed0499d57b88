import json
import tempfile
from os import environ, path
from uuid import uuid4

# Config is loaded at import time, it must be set before importing the app
environ["CONFIG_JSON"] = json.dumps(
    {
        "auth": {
            "secret": "test-secret-with-enough-length-for-hs256",
        },
        "database": {
            "mode": "sqlite",
            "sqlite": {
                "path": path.join(tempfile.mkdtemp(), "reminders"),
            },
        },
        "sync": {
            "max_changes": 5,
        },
    }
)

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from reminder_sync.helpers.config import CONFIG  # noqa: E402
from reminder_sync.main import api  # noqa: E402
from reminder_sync.persistence.istore import IStore  # noqa: E402


@pytest.fixture
def db() -> IStore:
    return CONFIG.database.instance


@pytest.fixture
def user_id() -> str:
    return f"user-{uuid4()}"


@pytest.fixture
def token(user_id: str) -> str:
    return jwt.encode(
        algorithm=CONFIG.auth.algorithm,
        key=CONFIG.auth.secret.get_secret_value(),
        payload={CONFIG.auth.user_claim: user_id},
    )


@pytest_asyncio.fixture
async def client(token: str):
    async with AsyncClient(
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
        transport=ASGITransport(app=api),
    ) as client:
        yield client
