import os
import tempfile

import pytest

# Set dummy environment variables for testing
# This must run before rankup.config is imported by any test
_scratch = tempfile.mkdtemp(prefix="rankup-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_scratch, "rankup.db"))
os.environ.setdefault("METADATA_DIR", os.path.join(_scratch, "metadata"))
os.environ.setdefault("KEYSTORE_PATH", os.path.join(_scratch, "authority.json"))
os.environ.setdefault("WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("STORAGE_API_TOKEN", "test_storage_token")
os.environ.setdefault("LOG_FORMAT", "text")

from fakes import Harness  # noqa: E402


@pytest.fixture
async def harness(tmp_path):
    """Fully wired pipeline over a temporary database and fake network services."""
    h = await Harness.create(tmp_path)
    yield h
    await h.close()
