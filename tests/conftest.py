import os
import sys
import tempfile

import pytest

# Ensure the packages are in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hrgate.signing import generate_keypair

# Configure the authority before it is imported
_tmp = tempfile.mkdtemp(prefix="hrgate-tests-")
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_keypair()
os.environ["HRGATE_DB_PATH"] = os.path.join(_tmp, "hrgate.db")
os.environ["HRGATE_SIGNER"] = "env"
os.environ["SIGNER_PRIVATE_KEY"] = TEST_PRIVATE_KEY
os.environ["TRANSPORT_BACKEND"] = "memory"
os.environ["SUPERVISOR_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"

# Initialize app at module load time
from authority.main import app, _startup, readings_limiter
from authority.db import init_db, reset_db
from authority.enforcement import get_memory_transport

init_db()
_startup()


# Reset state before each test for isolation
@pytest.fixture(autouse=True)
def _reset_state():
    reset_db()
    get_memory_transport().reset()
    readings_limiter.reset()
    yield
