import os
import tempfile

# must run before any roomcast module reads its settings
_DB_DIR = tempfile.mkdtemp(prefix="roomcast-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("RATE_LIMIT_EVENTS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")
