"""
Disposable PostgreSQL instances for automated tests.

Binaries are downloaded once per version into a shared cache; each
instance gets a private data directory and port and is torn down again
when the test is done.
"""

from .application.domain import ExtensionSpec, ServerState, ServerVersion
from .application.exceptions import *
from .application.service import PgServer
from .application.versions import resolve

__version__ = "0.1.0"
