"""SQL Server Management Objects (SMO) version discovery.

This module finds which SMO library versions are installed on a machine
and which one, if any, is loaded in the process doing the looking. The
enumeration itself only talks to a `MachineSession`, so the same routine
runs against the local filesystem or over a remote channel, depending on
the `MachineExecutor` it is handed to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol, TypeVar

from loguru import logger

from sqlops.core.auth import Credential

SMO_ASSEMBLY = "Microsoft.SqlServer.Smo"
SMO_PUBLIC_KEY_TOKEN = "89845dcd8080cc91"

# `<version>__<token>` in the CLR 2 store, `v4.0_<version>__<token>` in the CLR 4 one
_STORE_ENTRY = re.compile(r"(?:v[\d.]+_)?(\d+(?:\.\d+)*)__")

T = TypeVar("T")


@dataclass(frozen=True)
class LibraryVersion:
    """
    One installed SMO version on one machine.

    Attributes:
        computer_name: Machine the version was found on.
        version: Dotted assembly version, e.g. `13.0.0.0`.
        loaded: True if this is the version loaded in the executing process.
        load_template: PowerShell statement that loads exactly this version.
    """

    computer_name: str
    version: str
    loaded: bool
    load_template: str


@dataclass(frozen=True)
class ProbeResult:
    """Versions found on one machine, or the reason the probe failed."""

    machine: str
    versions: tuple[LibraryVersion, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MachineSession(Protocol):
    """Read-only view of one machine used by enumeration procedures."""

    computer_name: str
    assembly_roots: tuple[str, ...]

    def list_subdirectories(self, root: str, *parts: str) -> list[str]:
        """Return directory names under root/parts ([] if it does not exist)."""
        ...

    def loaded_library_version(self, assembly_name: str) -> str:
        """Return the version of the assembly loaded in-process, or ''."""
        ...


class MachineExecutor(Protocol):
    """Runs a procedure against a machine session (local or remote)."""

    def execute(
        self,
        machine: str,
        credential: Credential | None,
        procedure: Callable[..., T],
        **kwargs: Any,
    ) -> T:
        """Open a session on `machine` and return `procedure(session, **kwargs)`."""
        ...


def load_template(version: str) -> str:
    """Return the Add-Type statement that loads a specific SMO version."""
    return (
        f'Add-Type -AssemblyName "{SMO_ASSEMBLY}, Version={version}, '
        f'Culture=neutral, PublicKeyToken={SMO_PUBLIC_KEY_TOKEN}"'
    )


def enumerate_library_versions(
    session: MachineSession,
    version_filter: int | None = None,
) -> list[LibraryVersion]:
    """
    List the SMO versions installed in the machine's assembly stores.

    Assembly store folders are named `<version>__<public key token>`, with a
    `v4.0_` prefix in the .NET 4 store. Other folders are ignored.
    Versions are returned in descending order of their names.

    Args:
        session: Machine to inspect.
        version_filter: Optional major version; only versions starting with
                        `"<major>."` are returned.

    Returns:
        One LibraryVersion per distinct installed version.
    """
    loaded = session.loaded_library_version(SMO_ASSEMBLY) or ""

    found: set[str] = set()
    for root in session.assembly_roots:
        for entry in session.list_subdirectories(root, SMO_ASSEMBLY):
            match = _STORE_ENTRY.match(entry)
            if match:
                found.add(match.group(1))

    versions = sorted(found, reverse=True)
    if version_filter is not None:
        prefix = f"{version_filter}."
        versions = [v for v in versions if v.startswith(prefix)]

    return [
        LibraryVersion(
            computer_name=session.computer_name,
            version=v,
            loaded=v == loaded,
            load_template=load_template(v),
        )
        for v in versions
    ]


def probe_machines(
    executor: MachineExecutor,
    machines: Iterable[str],
    credential: Credential | None = None,
    *,
    version_filter: int | None = None,
) -> list[ProbeResult]:
    """
    Run the SMO enumeration on each machine, one at a time.

    A machine that cannot be reached, or whose enumeration fails, yields a
    ProbeResult with `error` set and no versions; the other machines are
    still probed.
    """
    results: list[ProbeResult] = []

    for machine in machines:
        try:
            versions = executor.execute(
                machine,
                credential,
                enumerate_library_versions,
                version_filter=version_filter,
            )
        except Exception as e:  # noqa: BLE001
            logger.error("SMO probe on {} failed: {}", machine, e)
            results.append(ProbeResult(machine=machine, error=str(e)))
            continue

        logger.debug("{}: {} SMO version(s) found", machine, len(versions))
        results.append(ProbeResult(machine=machine, versions=tuple(versions)))

    return results
