"""
Secrets for production deployments

Lookup order for a secret called "jwt_secret_key":
1. /run/secrets/jwt_secret_key (Docker / Swarm secret mount)
2. the file named by $JWT_SECRET_KEY_FILE
3. $JWT_SECRET_KEY
4. the default passed by the caller

config.py reads the JWT signing key and the database URL through here, so
neither has to sit in a plain environment variable.
"""
import os
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

SECRETS_DIR = Path("/run/secrets")


class MissingSecretError(RuntimeError):
    """A required secret is not available from any source"""


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()


def load_secret(
    name: str,
    default: Optional[str] = None,
    required: bool = False,
    secrets_dir: Path = SECRETS_DIR
) -> Optional[str]:
    """
    Resolve a secret value; see the module docstring for the order.

    Raises:
        MissingSecretError: $<NAME>_FILE names a missing file, or the secret
            is required and no source (nor a default) provides it
    """
    key = name.lower().replace("-", "_")
    env_name = key.upper()

    mounted = secrets_dir / key
    if mounted.is_file():
        logger.debug("secret_loaded", secret=key, source="secrets_dir")
        return _read(mounted)

    file_name = os.getenv(f"{env_name}_FILE")
    if file_name:
        path = Path(file_name)
        if not path.is_file():
            raise MissingSecretError(f"{env_name}_FILE points to {file_name}, which does not exist")
        logger.debug("secret_loaded", secret=key, source="env_file")
        return _read(path)

    value = os.getenv(env_name)
    if value:
        logger.debug("secret_loaded", secret=key, source="env")
        return value

    if default is not None:
        logger.debug("secret_defaulted", secret=key)
        return default

    if required:
        raise MissingSecretError(
            f"Secret {key!r} not found ({mounted}, ${env_name}_FILE, ${env_name})"
        )
    return None
