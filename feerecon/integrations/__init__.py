# feerecon/integrations/__init__.py

from feerecon.integrations import zoho_mapping
from feerecon.integrations import zoho_auth
from feerecon.integrations import zoho
from feerecon.integrations import claude

__all__ = ["zoho_mapping", "zoho_auth", "zoho", "claude"]
