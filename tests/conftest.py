import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# in-memory SQLite engine, no outside services
os.environ["DATABASE_URL"] = ""
os.environ.pop("INSTANCE_UNIX_SOCKET", None)
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["IMPORT_DEFAULT_DELAY_MS"] = "0"
os.environ["CRM_API_TOKEN"] = "test-token"
