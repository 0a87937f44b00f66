"""Remote management service installed on every provisioned machine.

This package is copied verbatim onto the machine by the setup script and run
there as ``devbox_remote``. It must only import the standard library, FastAPI,
pydantic and pydantic-settings, and only use relative imports internally.
"""

PACKAGE_NAME = "devbox_remote"

# Files shipped to the machine, in install order.
MODULES = ("__init__.py", "agents.py", "credentials.py", "config.py", "system.py", "server.py")
