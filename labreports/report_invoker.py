"""Render one report per test item with the external report engine.

The engine is driven synchronously: one process per report, argv-array
spawn (no shell string), overridden Oracle environment, hard timeout. The
engine writes its PDF into the shared results folder on its own; this module
does not check for the file, the convergence waiter does.

The engine exits with status 3 after a successful run. Success codes are
configurable and default to ``(0, 3)``; anything else, a timeout, or a
failure to start the executable raises ``InvocationError``.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from .data_models import InvocationResult
from .database import report_userid
from .exceptions import InvocationError
from .utils import format_parameters, redact_argv

LOG = logging.getLogger(__name__)

DEFAULT_SUCCESS_CODES = (0, 3)


@dataclass(frozen=True)
class ReportCommand:
    """Typed command line for one report engine run.

    Parameters
    ----------
    executable : str
        Report engine executable (``RWRUN60.EXE``).
    template_path : Path
        Report template to run.
    userid : str
        Database credentials in ``user/password@connect`` form.
    parameters : Mapping[str, str]
        Report parameters passed as ``KEY=VALUE``.
    """

    executable: str
    template_path: Path
    userid: str
    parameters: Mapping[str, str] = field(default_factory=dict)

    def to_argv(self) -> list[str]:
        argv = [
            self.executable,
            f"report={self.template_path}",
            f"userid={self.userid}",
            "destype=PRINTER",
            "desname=PDF",
            "paramform=NO",
            "BATCH=YES",
        ]
        argv.extend(f"{key}={value}" for key, value in self.parameters.items())
        return argv


def build_environment(
    oracle_home: Optional[str],
    tns_admin: Optional[str],
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Return the process environment the report engine expects."""
    env = dict(os.environ if base is None else base)
    if oracle_home:
        env["ORACLE_HOME"] = oracle_home
        bin_dir = str(Path(oracle_home) / "BIN")
        env["PATH"] = os.pathsep.join(filter(None, [bin_dir, env.get("PATH", "")]))
    if tns_admin:
        env["TNS_ADMIN"] = tns_admin
    return env


class ReportInvoker:
    """Synchronous wrapper around the report engine executable."""

    def __init__(
        self,
        executable: str,
        userid: str,
        *,
        timeout_seconds: float = 60,
        success_codes: Sequence[int] = DEFAULT_SUCCESS_CODES,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.executable = executable
        self.userid = userid
        self.timeout_seconds = timeout_seconds
        self.success_codes = frozenset(success_codes)
        self.env = dict(env) if env is not None else None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ReportInvoker":
        reports = config.get("reports", {})
        return cls(
            executable=reports.get("rwrun_path", "rwrun60"),
            userid=report_userid(config),
            timeout_seconds=reports.get("timeout_seconds", 60),
            success_codes=reports.get("success_exit_codes", DEFAULT_SUCCESS_CODES),
            env=build_environment(reports.get("oracle_home"), reports.get("tns_admin")),
        )

    def invoke(self, template_path: Path, parameters: Mapping[str, str]) -> InvocationResult:
        """Run the report engine for one template.

        Raises
        ------
        InvocationError
            If the engine exits with a non-success code, times out, or cannot
            be started.
        """
        command = ReportCommand(self.executable, Path(template_path), self.userid, dict(parameters))
        argv = command.to_argv()
        reg_key = parameters.get("MY_REG_KEY")
        LOG.info(
            "Generating report: %s with parameters: %s",
            template_path,
            format_parameters(parameters),
        )
        LOG.debug("Report command: %s", " ".join(redact_argv(argv)))

        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                env=self.env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise InvocationError(
                f"Report generation timed out after {self.timeout_seconds}s: {template_path}",
                reg_key=reg_key,
            ) from exc
        except OSError as exc:
            raise InvocationError(
                f"Could not start report engine {self.executable}: {exc}",
                reg_key=reg_key,
            ) from exc

        result = InvocationResult(
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration=time.monotonic() - started,
        )

        if result.returncode not in self.success_codes:
            raise InvocationError(
                f"Report generation failed with exit code {result.returncode}: "
                f"{result.stderr.strip() or result.stdout.strip()}",
                reg_key=reg_key,
                returncode=result.returncode,
                stderr=result.stderr,
            )

        if result.returncode == 0:
            LOG.info("Report generated successfully in %.1fs", result.duration)
        else:
            LOG.info(
                "Report generation completed (exit code %s is normal for the report engine)",
                result.returncode,
            )
        return result
