"""
Directory access boundary.

The ingestion code never resolves the projects root itself; it asks a broker
for a root that exists and is readable.
"""

import os
from pathlib import Path
from typing import Union

from .errors import DirectoryNotFoundError, DirectoryPermissionError

DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"


class DirectoryAccessBroker:
    """Supplies a resolved, permission-checked root directory."""

    def resolve_root(self) -> Path:
        """Return the root directory.

        Raises:
            DirectoryNotFoundError: If the directory does not exist
            DirectoryPermissionError: If it cannot be listed or read
        """
        raise NotImplementedError

    def has_access(self) -> bool:
        try:
            self.resolve_root()
        except (DirectoryNotFoundError, DirectoryPermissionError):
            return False
        return True


class LocalDirectoryBroker(DirectoryAccessBroker):
    """Broker for a directory on the local filesystem."""

    def __init__(self, root: Union[str, Path] = DEFAULT_PROJECTS_DIR):
        self.root = Path(root).expanduser()

    def resolve_root(self) -> Path:
        if not self.root.is_dir():
            raise DirectoryNotFoundError(str(self.root))
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise DirectoryPermissionError(str(self.root))
        return self.root
