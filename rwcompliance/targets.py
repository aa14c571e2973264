"""Senders under test, launched as child processes."""
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import logging
import os
import signal
import subprocess
import tempfile
import time

from rwcompliance.config import TargetConfig
from rwcompliance.errors import TargetError

logger = logging.getLogger(__name__)


@dataclass
class TargetOptions:
    """Where the sender scrapes from and pushes to, and when it must stop."""
    scrape_target: str
    receive_endpoint: str
    deadline: float  # time.monotonic() value
    shutdown_grace_s: float = 5.0

    @property
    def timeout(self) -> float:
        """Seconds left until the deadline."""
        return max(0.0, self.deadline - time.monotonic())


Target = Callable[[TargetOptions], None]


class CommandTarget:
    """
    Runs a sender command until the run deadline, then interrupts it.

    The command and optional config template are formatted with
    {scrape_target} and {receive_endpoint}; the rendered template is
    written to a temporary file whose path fills {config_file}.
    """

    def __init__(self, name: str, config: TargetConfig):
        self.name = name
        self.config = config

    def _render(self, options: TargetOptions, config_file: Optional[str]) -> List[str]:
        values = {
            "scrape_target": options.scrape_target,
            "receive_endpoint": options.receive_endpoint,
            "config_file": config_file or "",
        }
        try:
            return [arg.format(**values) for arg in self.config.command]
        except (KeyError, IndexError) as e:
            raise TargetError(f"Target '{self.name}' command has an unknown placeholder: {e}") from e

    def __call__(self, options: TargetOptions):
        with tempfile.TemporaryDirectory(prefix=f"rw-{self.name}-") as workdir:
            config_file = None
            if self.config.config_template is not None:
                config_file = os.path.join(workdir, "config")
                try:
                    rendered = self.config.config_template.format(
                        scrape_target=options.scrape_target,
                        receive_endpoint=options.receive_endpoint,
                    )
                except (KeyError, IndexError) as e:
                    raise TargetError(f"Target '{self.name}' config template has an unknown placeholder: {e}") from e
                with open(config_file, "w") as f:
                    f.write(rendered)

            args = self._render(options, config_file)
            logger.info(f"Starting target '{self.name}': {' '.join(args)}")
            try:
                proc = subprocess.Popen(args, cwd=workdir)
            except OSError as e:
                raise TargetError(f"Failed to start target '{self.name}': {e}") from e

            self._wait(proc, options)

    def _wait(self, proc: subprocess.Popen, options: TargetOptions):
        try:
            returncode = proc.wait(timeout=options.timeout)
        except subprocess.TimeoutExpired:
            pass
        else:
            if returncode != 0:
                raise TargetError(f"Target '{self.name}' exited early with code {returncode}")
            logger.warning(f"Target '{self.name}' exited before the run window closed")
            return

        logger.debug(f"Run window closed, interrupting target '{self.name}'")
        proc.send_signal(signal.SIGINT)
        try:
            proc.wait(timeout=options.shutdown_grace_s)
        except subprocess.TimeoutExpired:
            logger.warning(f"Target '{self.name}' ignored SIGINT, killing it")
            proc.kill()
            proc.wait()


def build_targets(configs: Dict[str, TargetConfig], names: Optional[List[str]] = None) -> Dict[str, Target]:
    """Create command targets, optionally restricted to ``names``."""
    if names:
        unknown = [n for n in names if n not in configs]
        if unknown:
            raise KeyError(f"Unknown targets: {unknown}. Configured: {list(configs)}")
        configs = {n: configs[n] for n in names}
    return {name: CommandTarget(name, cfg) for name, cfg in configs.items()}
