"""Runs the operator-supplied command that refreshes the HKSE source folders."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)


class ExternalPuller:
    def __init__(self, command: str, *, timeout: float = 600, cwd: Optional[str] = None) -> None:
        self.command = command
        self.timeout = timeout
        self.cwd = cwd

    def run(self) -> bool:
        """Run the command; ``True`` when it exits with status 0."""

        logger.info("running external pull: %s", self.command)
        try:
            completed = subprocess.run(
                shlex.split(self.command),
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error("external pull timed out after %.0fs", self.timeout)
            return False
        except OSError as exc:
            logger.error("external pull could not start: %s", exc)
            return False

        if completed.returncode != 0:
            logger.error(
                "external pull exited with %d: %s",
                completed.returncode,
                (completed.stderr or completed.stdout).strip()[-500:],
            )
            return False
        logger.info("external pull finished")
        return True
