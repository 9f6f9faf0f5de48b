import os

# Keep the CLI and config loader away from a developer's real cluster settings
os.environ.pop("KUBEPLOY_SECRETS_DIR", None)
os.environ.setdefault("KUBEPLOY_NAMESPACE", "default")

from tests.fixtures import *  # noqa: E402,F401,F403
