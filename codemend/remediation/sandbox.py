import os
import shlex
import shutil
import subprocess
from typing import Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger()


class Sandbox:
    """Runs gate commands in a subprocess with a timeout. Never uses a shell."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    @staticmethod
    def _args(command) -> List[str]:
        return shlex.split(command) if isinstance(command, str) else list(command)

    def is_available(self, command) -> bool:
        args = self._args(command)
        return bool(args) and shutil.which(args[0]) is not None

    def run(self, command, env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None) -> Tuple[bool, str]:
        """
        Runs a command in a subprocess.
        Returns (success, output).
        """
        run_env = os.environ.copy()
        if env:
            run_env.update(env)
        args = self._args(command)

        try:
            result = subprocess.run(
                args,
                shell=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=run_env,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            logger.error("sandbox_timeout", command=args, timeout=self.timeout)
            return False, "Execution timed out"
        except OSError as e:
            logger.error("sandbox_failed", command=args, error=str(e))
            return False, str(e)

        output = result.stdout + result.stderr
        return result.returncode == 0, output
