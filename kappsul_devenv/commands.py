from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from typing import Dict, List, Optional

from kappsul_devenv.errors import PreconditionMissing
from kappsul_devenv.log import get_logger


class CommandRunner:
    """Thin wrapper over ``subprocess.run`` shared by every tool client."""

    def __init__(self, env: Optional[Dict[str, str]] = None, logger: Optional[logging.Logger] = None) -> None:
        self.env = dict(os.environ if env is None else env)
        self.logger = logger or get_logger("commands")

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        capture_output: bool = False,
        stdout=None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess[str]:
        self.logger.debug(f"[Exec] {shlex.join(cmd)}")
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            capture_output=capture_output,
            env=self.env,
            stdout=stdout,
            input=input,
        )

    def output(self, cmd: List[str]) -> str:
        """Stdout of ``cmd`` or an empty string when the command fails."""
        result = self.run(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    def succeeds(self, cmd: List[str]) -> bool:
        return self.run(cmd, check=False, capture_output=True).returncode == 0

    def has_command(self, name: str) -> bool:
        return shutil.which(name, path=self.env.get("PATH")) is not None

    def ensure_command(self, name: str) -> None:
        if not self.has_command(name):
            raise PreconditionMissing(f"[Deps] {name} is required but not found in PATH")
