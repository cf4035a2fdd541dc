"""Allow ``python -m mingle`` to start the server."""
from mingle.main import run

run()
