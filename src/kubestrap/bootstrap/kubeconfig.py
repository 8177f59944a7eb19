"""Administrator kubeconfig handling."""

import os
from pathlib import Path

import yaml

from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)


def rewrite_server(content: str, address: str, port: int = 6443) -> str:
    """Point every cluster entry of a kubeconfig at ``https://address:port``."""
    document = yaml.safe_load(content) or {}
    for entry in document.get("clusters", []):
        entry.setdefault("cluster", {})["server"] = f"https://{address}:{port}"
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def write_private_file(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(path, 0o600)
    logger.info("kubeconfig_written", path=str(path))
