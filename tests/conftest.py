import os
import tempfile

# database.py builds its engine at import time
_DATA_DIR = tempfile.mkdtemp(prefix="ledger-tests-")
os.environ.setdefault("LEDGER_DATA_DIR", _DATA_DIR)
os.environ.setdefault(
    "LEDGER_DATABASE_URL", f"sqlite:///{os.path.join(_DATA_DIR, 'ledger.db')}"
)
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")
os.environ.setdefault("LEDGER_SECRET_KEY", "test-secret")
