# feerecon/routers/__init__.py

from feerecon.routers import health
from feerecon.routers import payments
from feerecon.routers import session
from feerecon.routers import prescreening
from feerecon.routers import sync

__all__ = ["health", "payments", "session", "prescreening", "sync"]
