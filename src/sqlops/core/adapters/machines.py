from __future__ import annotations

import socket
import sys
from pathlib import Path, PureWindowsPath
from typing import Any, Callable, TypeVar

import winrm
from loguru import logger

from sqlops.core.auth import Credential
from sqlops.core.config import Settings
from sqlops.core.errors import RemoteExecutionError

T = TypeVar("T")

_LOCAL_NAMES = {"localhost", ".", "127.0.0.1", "::1"}


def is_local_machine(machine: str) -> bool:
    """Return True if `machine` names the host this process runs on."""
    name = machine.strip().lower()
    if name in _LOCAL_NAMES:
        return True
    hostname = socket.gethostname().lower()
    return name in {hostname, hostname.split(".")[0], socket.getfqdn().lower()}


def _ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


class LocalMachineSession:
    """Machine session backed by the local filesystem and process."""

    def __init__(self, assembly_roots: tuple[str, ...]) -> None:
        self.computer_name = socket.gethostname()
        self.assembly_roots = assembly_roots

    def list_subdirectories(self, root: str, *parts: str) -> list[str]:
        """List directory names under root/parts on the local disk."""
        path = Path(root, *parts)
        if not path.is_dir():
            return []
        return [p.name for p in path.iterdir() if p.is_dir()]

    def loaded_library_version(self, assembly_name: str) -> str:
        """
        Return the assembly version loaded in this process through pythonnet.

        Nothing can be loaded unless pythonnet's `clr` module has already been
        imported by the host application.
        """
        if "clr" not in sys.modules:
            return ""
        from System import AppDomain  # provided by the loaded CLR

        for assembly in AppDomain.CurrentDomain.GetAssemblies():
            name = assembly.GetName()
            if name.Name == assembly_name:
                return str(name.Version)
        return ""


class WinRMMachineSession:
    """Machine session whose lookups run as PowerShell over WinRM."""

    def __init__(
        self,
        machine: str,
        credential: Credential | None,
        settings: Settings,
    ) -> None:
        self.computer_name = machine
        self.assembly_roots = settings.assembly_roots
        if credential is None:
            # kerberos picks up the caller's ticket
            self._session = winrm.Session(
                machine, auth=(None, None), transport="kerberos"
            )
        else:
            self._session = winrm.Session(
                machine,
                auth=(credential.username, credential.password),
                transport=settings.winrm_transport,
            )

    def _run(self, script: str) -> str:
        try:
            response = self._session.run_ps(script)
        except Exception as exc:  # noqa: BLE001
            raise RemoteExecutionError(self.computer_name, str(exc)) from exc
        if response.status_code != 0:
            err = response.std_err.decode("utf-8", errors="replace").strip()
            raise RemoteExecutionError(
                self.computer_name, err or f"exit code {response.status_code}"
            )
        return response.std_out.decode("utf-8", errors="replace")

    def list_subdirectories(self, root: str, *parts: str) -> list[str]:
        """List directory names under root/parts on the remote machine."""
        path = str(PureWindowsPath(root, *parts))
        script = (
            f"Get-ChildItem -LiteralPath {_ps_quote(path)} -Directory "
            "-ErrorAction SilentlyContinue | Select-Object -ExpandProperty Name"
        )
        lines = self._run(script).splitlines()
        return [line.strip() for line in lines if line.strip()]

    def loaded_library_version(self, assembly_name: str) -> str:
        """Return the assembly version loaded in the remote PowerShell session."""
        script = (
            "$a = [AppDomain]::CurrentDomain.GetAssemblies() | "
            f"Where-Object {{ $_.GetName().Name -eq {_ps_quote(assembly_name)} }} | "
            "Select-Object -First 1; "
            "if ($a) { $a.GetName().Version.ToString() }"
        )
        return self._run(script).strip()


class LocalExecutor:
    """Runs procedures in-process against the local machine."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def execute(
        self,
        machine: str,
        credential: Credential | None,
        procedure: Callable[..., T],
        **kwargs: Any,
    ) -> T:
        session = LocalMachineSession(self.settings.assembly_roots)
        return procedure(session, **kwargs)


class WinRMExecutor:
    """Runs procedures against remote machines over WinRM; local names stay local."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._local = LocalExecutor(settings)

    def execute(
        self,
        machine: str,
        credential: Credential | None,
        procedure: Callable[..., T],
        **kwargs: Any,
    ) -> T:
        if is_local_machine(machine):
            logger.debug("{} is the local machine, running in-process", machine)
            return self._local.execute(machine, credential, procedure, **kwargs)

        logger.debug("Opening WinRM session to {}", machine)
        try:
            session = WinRMMachineSession(machine, credential, self.settings)
        except Exception as exc:  # noqa: BLE001
            raise RemoteExecutionError(machine, str(exc)) from exc
        return procedure(session, **kwargs)
