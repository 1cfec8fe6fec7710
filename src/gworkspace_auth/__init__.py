"""Google Workspace MCP authentication.

OAuth2 and service-account credentials for the Google Workspace MCP server.
"""

from gworkspace_auth.__version__ import __version__
from gworkspace_auth.auth.factory import AuthFactory
from gworkspace_auth.config import AuthSettings
from gworkspace_auth.errors import AuthError, ErrorKind, user_message

__all__ = ["__version__", "AuthFactory", "AuthSettings", "AuthError", "ErrorKind", "user_message"]
