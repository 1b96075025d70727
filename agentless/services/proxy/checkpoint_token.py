"""
Checkpoint (CBT change id) token files.

A token file is treated as a one-sector block device: the token plus a
newline is written into the first 512-byte sector and the rest of the
sector is zero padded. The copy is delegated to a block copy helper (dd)
with /dev/stdin or /dev/stdout as the pseudo-device on the other side.
"""

import logging
import subprocess
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
FULL_BACKUP_TOKEN = "*"


class CheckpointTokenError(Exception):
    """Exception raised when a token file cannot be read or written."""
    pass


class CheckpointTokenStore:
    """Read and write checkpoint tokens through the block copy helper."""

    def __init__(self, helper_binary: str = "dd"):
        self.helper_binary = helper_binary

    def read(self, token_file: str) -> str:
        """
        Read the token stored in a token file.

        A missing file holds no checkpoint yet and reads as "*". An existing
        file whose first sector holds no token reads as "", which the planner
        turns into a "*" scan with diff-merge.

        Raises:
            CheckpointTokenError: If the helper fails
        """
        path = Path(token_file)
        if not path.exists():
            return FULL_BACKUP_TOKEN
        if path.stat().st_size == 0:
            return ""

        command = [
            self.helper_binary,
            f"if={path}",
            "of=/dev/stdout",
            f"bs={SECTOR_SIZE}",
            "count=1",
            "status=none",
        ]
        try:
            result = subprocess.run(command, check=True, capture_output=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise CheckpointTokenError(f"Failed to read checkpoint token from {path}: {e}") from e

        token = result.stdout.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()
        return token

    def write(self, token_file: str, token: str):
        """
        Write a token into the first sector of a token file.

        Raises:
            CheckpointTokenError: If the token does not fit or the helper fails
        """
        data = f"{token}\n".encode("utf-8")
        if len(data) > SECTOR_SIZE:
            raise CheckpointTokenError(f"Checkpoint token longer than {SECTOR_SIZE} bytes")

        path = Path(token_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        command = [
            self.helper_binary,
            "if=/dev/stdin",
            f"of={path}",
            f"bs={SECTOR_SIZE}",
            "count=1",
            "conv=notrunc,sync",
            "status=none",
        ]
        try:
            subprocess.run(command, input=data, check=True, capture_output=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise CheckpointTokenError(f"Failed to write checkpoint token to {path}: {e}") from e

        logger.debug(f"Wrote checkpoint token to {path}")

    def read_all(self, token_files: List[str]) -> List[str]:
        """
        Read every token file.

        Raises:
            CheckpointTokenError: On the first failing read; callers then
                distrust the whole batch
        """
        return [self.read(token_file) for token_file in token_files]
