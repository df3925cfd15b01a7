from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import shlex

from mailrestore.core.errors import FileTreeWarning, RestoreWarning, RuntimeUnavailableError
from mailrestore.domain.scope import Scope
from mailrestore.services.archive import ArchiveInfo
from mailrestore.services.runtime import ContainerRuntime, Mount


logger = logging.getLogger(__name__)

VMAIL_MOUNT = "/vmail"
# Mail root as seen from inside the dovecot container.
DOVECOT_VMAIL_ROOT = "/var/vmail"


@dataclass
class FileTreeOutcome:
    extracted: bool = False
    pattern: str | None = None
    directory_present: bool = False
    warnings: list[RestoreWarning] = field(default_factory=list)


def archive_patterns(scope: Scope) -> list[str]:
    # Archivers disagree on whether members keep the leading slash; try both.
    return [f"{VMAIL_MOUNT}/{scope.path_prefix}/*", f"{VMAIL_MOUNT.lstrip('/')}/{scope.path_prefix}/*"]


def _extract_script(asset: ArchiveInfo, pattern: str) -> str:
    archive = shlex.quote(f"/backup/{asset.filename}")
    return (
        f"set -o pipefail; cd / && {asset.decompress_cmd} < {archive} "
        f"| tar -Pxf - --wildcards {shlex.quote(pattern)}"
    )


class FileTreeRestorer:
    """Restores one scope's maildir subtree from the vmail archive into the live volume."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        location: Path,
        asset: ArchiveInfo,
        volume: str,
        image: str,
        dovecot: str,
    ) -> None:
        self.runtime = runtime
        self.location = location
        self.asset = asset
        self.volume = volume
        self.image = image
        self.dovecot = dovecot

    def restore(self, scope: Scope) -> FileTreeOutcome:
        outcome = FileTreeOutcome()
        if not self.asset.present:
            outcome.warnings.append(FileTreeWarning("no vmail backup found; mail files not restored"))
            return outcome
        # dovecot holds maildirs open; stop it only around the extraction.
        try:
            was_running = self.runtime.stop_service(self.dovecot)
            try:
                self._extract(scope, outcome)
                outcome.directory_present = self._directory_present(scope)
            finally:
                if was_running:
                    self.runtime.start_service(self.dovecot)
        except RuntimeUnavailableError as exc:
            logger.warning("filetree_runtime_failed scope=%s error=%s", scope, exc)
            outcome.warnings.append(
                FileTreeWarning(f"mail files for {scope} not restored: {exc}; check that {self.dovecot} is running")
            )
            return outcome
        if not outcome.directory_present:
            outcome.warnings.append(
                FileTreeWarning(f"{VMAIL_MOUNT}/{scope.path_prefix} not found in the vmail volume after extraction")
            )
            return outcome
        self._fix_permissions(scope, outcome)
        self._reindex(scope, outcome)
        logger.info("filetree_restored scope=%s pattern=%s", scope, outcome.pattern)
        return outcome

    def _extract(self, scope: Scope, outcome: FileTreeOutcome) -> None:
        mounts = [Mount(str(self.location), "/backup"), Mount(self.volume, VMAIL_MOUNT, read_only=False)]
        errors: list[str] = []
        for pattern in archive_patterns(scope):
            result = self.runtime.run_helper(self.image, _extract_script(self.asset, pattern), mounts=mounts)
            if result.ok:
                outcome.extracted = True
                outcome.pattern = pattern
                return
            logger.info("filetree_pattern_miss pattern=%s exit=%s", pattern, result.exit_code)
            errors.append(result.stderr.strip())
        detail = next((error for error in errors if error), "no matching members")
        outcome.warnings.append(FileTreeWarning(f"no mail files for {scope} extracted: {detail}"))

    def _directory_present(self, scope: Scope) -> bool:
        target = shlex.quote(f"{VMAIL_MOUNT}/{scope.path_prefix}")
        result = self.runtime.run_helper(self.image, f"[ -d {target} ]", mounts=[Mount(self.volume, VMAIL_MOUNT)])
        return result.ok

    def _fix_permissions(self, scope: Scope, outcome: FileTreeOutcome) -> None:
        target = f"{DOVECOT_VMAIL_ROOT}/{scope.path_prefix}"
        for command in (["chown", "-R", "vmail:vmail", target], ["chmod", "-R", "700", target]):
            self._exec(command, outcome)

    def _reindex(self, scope: Scope, outcome: FileTreeOutcome) -> None:
        # Safe to re-run by hand; failures only warn.
        user = scope.doveadm_user
        self._exec(["doveadm", "force-resync", "-u", user, "*"], outcome)
        self._exec(["doveadm", "quota", "recalc", "-u", user], outcome)

    def _exec(self, command: list[str], outcome: FileTreeOutcome) -> None:
        try:
            result = self.runtime.exec_in_service(self.dovecot, command)
        except RuntimeUnavailableError as exc:
            outcome.warnings.append(FileTreeWarning(f"{' '.join(command)} failed: {exc}"))
            return
        if not result.ok:
            outcome.warnings.append(
                FileTreeWarning(f"{' '.join(command)} exited {result.exit_code}: {result.stderr.strip()}")
            )
