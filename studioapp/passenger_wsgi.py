import os, sys

# Ensure we import from this app root
APP_ROOT = os.path.dirname(__file__)
if APP_ROOT not in sys.path:
    sys.path.insert(0, APP_ROOT)

os.environ.pop("PYTHONHOME", None)

from studio import create_app

application = create_app()
