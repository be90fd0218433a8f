import os
import tempfile

# Settings are cached on first import, so the environment has to be in place
# before any project module is loaded.
os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))
os.environ.setdefault("FINANCE_SCHEDULER_ENABLED", "0")
os.environ.setdefault("FINANCE_COOKIE_SECURE", "0")
os.environ.setdefault("FINANCE_COOKIE_SAMESITE", "lax")
