"""YAML persistence for the client's settings file."""
import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class YAMLFileStore:
    """One YAML mapping on disk.

    Attributes:
        path: Path to the YAML file
    """
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Optional[Dict[str, Any]]:
        """Load the mapping stored in the file.

        Returns:
            The mapping, or None if the file is missing, unreadable or does
            not hold a mapping
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            logger.info("%s does not exist yet", self.path)
            return None
        except (OSError, yaml.YAMLError):
            logger.exception("Failed to read YAML file %s", self.path)
            return None

        if not isinstance(data, dict):
            logger.warning("%s does not contain a YAML mapping", self.path)
            return None
        return data

    def save(self, data: Dict[str, Any]) -> None:
        """Replace the file's contents.

        The document goes to a temporary sibling first, which is then renamed
        over the target.
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        tmp_path = f"{self.path}.{os.getpid()}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        os.replace(tmp_path, self.path)
