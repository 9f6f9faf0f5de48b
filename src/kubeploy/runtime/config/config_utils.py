import os
import re
from pathlib import Path

from loguru import logger

# Max size for environment variable values loaded from secret files
MAX_ENV_VAR_SIZE = 32768


def load_secret_files_into_env(directory: Path | None = None) -> int:
    """Expose files from a secrets directory as environment variables.

    The file stem, upper-cased with non-alphanumeric characters replaced by
    underscores, becomes the variable name. Variables that are already set are
    left untouched.

    Returns:
        Number of variables set
    """
    if directory is None:
        custom_dir = os.getenv("KUBEPLOY_SECRETS_DIR")
        if not custom_dir:
            return 0
        directory = Path(custom_dir)

    if not directory.is_dir():
        logger.debug(f"Secrets directory {directory} does not exist, skipping")
        return 0

    loaded = 0
    for file_path in sorted(directory.iterdir()):
        if not file_path.is_file():
            continue

        env_name = file_path.stem.upper()
        env_name = "".join(c if c.isalnum() or c == "_" else "_" for c in env_name)
        if not env_name or env_name in os.environ:
            continue

        try:
            value = file_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning(f"Unable to read secret file {file_path}: {exc}")
            continue

        if not value:
            continue
        if len(value) > MAX_ENV_VAR_SIZE:
            logger.warning(
                f"Secret file {file_path.name} is too large ({len(value)} bytes) "
                f"for an environment variable (max {MAX_ENV_VAR_SIZE} bytes)"
            )
            continue

        os.environ[env_name] = value
        loaded += 1
        logger.debug(f"Loaded secret {env_name} from {file_path.name}")

    return loaded


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variable placeholders in text.

    Supports formats:
    - ${VAR_NAME} - required variable (raises error if missing)
    - ${VAR_NAME:-default} - optional with default value
    - ${VAR_NAME:?error_message} - required with custom error message
    """

    def replacer(match: re.Match[str]) -> str:
        var_expr = match.group(1)

        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.getenv(var_name, default)

        if ":?" in var_expr:
            var_name, error_msg = var_expr.split(":?", 1)
            value = os.getenv(var_name)
            if value is None:
                raise ValueError(f"Required environment variable {var_name}: {error_msg}")
            return value

        value = os.getenv(var_expr)
        if value is None:
            raise ValueError(f"Required environment variable {var_expr} not set")
        return value

    return re.sub(r"\$\{([^}]+)\}", replacer, text)
