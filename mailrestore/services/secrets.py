from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import shlex

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
import redis

from mailrestore.core.errors import RestoreWarning, RuntimeUnavailableError, SecretMismatchWarning, SecretWarning
from mailrestore.services.archive import ArchiveInfo
from mailrestore.services.runtime import ContainerRuntime, Mount


logger = logging.getLogger(__name__)

DKIM_SELECTORS = "DKIM_SELECTORS"
DKIM_PUB_KEYS = "DKIM_PUB_KEYS"
DKIM_PRIV_KEYS = "DKIM_PRIV_KEYS"

CRYPT_PUBLIC_KEY = "ecpubkey.pem"
CRYPT_PRIVATE_KEY = "ecprivkey.pem"

CRYPT_MATCH = "match"
CRYPT_MISMATCH = "mismatch"
CRYPT_BACKUP_UNREADABLE = "backup_unreadable"
CRYPT_LIVE_UNREADABLE = "live_unreadable"
CRYPT_ABSENT = "absent"


@dataclass(frozen=True)
class DkimMaterial:
    # Signing key set for one domain as stored in the backup redis dump.
    domain: str
    selector: str
    public_key: str | None
    private_key: str = field(repr=False)

    @property
    def private_key_field(self) -> str:
        return f"{self.selector}.{self.domain}"


@dataclass
class SecretResult:
    restored: bool = False
    backup_path: Path | None = None
    warnings: list[RestoreWarning] = field(default_factory=list)


def read_backup_dkim(client: redis.Redis, domain: str) -> DkimMaterial | None:
    """Read the active DKIM selector and key pair for ``domain`` from a staged dump.

    Returns ``None`` when the backup carries no signing key for the domain.
    """
    selector = client.hget(DKIM_SELECTORS, domain)
    if not selector:
        logger.info("dkim_absent domain=%s", domain)
        return None
    private_key = client.hget(DKIM_PRIV_KEYS, f"{selector}.{domain}")
    if not private_key:
        logger.warning("dkim_private_key_missing domain=%s selector=%s", domain, selector)
        return None
    public_key = client.hget(DKIM_PUB_KEYS, domain)
    logger.info("dkim_found domain=%s selector=%s", domain, selector)
    return DkimMaterial(domain=domain, selector=selector, public_key=public_key or None, private_key=private_key)


def _write_private_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())


def _backup_live_dkim(live: redis.Redis, domain: str, selector: str, path: Path) -> None:
    public_key = live.hget(DKIM_PUB_KEYS, domain) or ""
    private_key = live.hget(DKIM_PRIV_KEYS, f"{selector}.{domain}") or ""
    lines = [
        f"SELECTOR={selector}",
        f"PUBKEY={public_key}",
        "PRIVKEY_START",
        private_key,
        "PRIVKEY_END",
    ]
    _write_private_file(path, "\n".join(lines) + "\n")


def restore_dkim(live: redis.Redis, material: DkimMaterial, *, backup_dir: Path, timestamp: str) -> SecretResult:
    """Write a backup DKIM key set into live redis, preserving the current one on disk first."""
    result = SecretResult()
    domain = material.domain
    try:
        existing_selector = live.hget(DKIM_SELECTORS, domain)
        if existing_selector:
            backup_path = backup_dir / f"{domain}_dkim_{timestamp}.txt"
            try:
                _backup_live_dkim(live, domain, existing_selector, backup_path)
            except OSError as exc:
                result.warnings.append(
                    SecretWarning(f"DKIM key for {domain} not restored: could not back up existing key ({exc})")
                )
                return result
            result.backup_path = backup_path
            logger.info("dkim_backed_up domain=%s path=%s", domain, backup_path)
            if existing_selector != material.selector:
                live.hdel(DKIM_PRIV_KEYS, f"{existing_selector}.{domain}")
        live.hset(DKIM_SELECTORS, domain, material.selector)
        if material.public_key:
            live.hset(DKIM_PUB_KEYS, domain, material.public_key)
        live.hset(DKIM_PRIV_KEYS, material.private_key_field, material.private_key)
        verified = (
            live.hget(DKIM_SELECTORS, domain) == material.selector
            and live.hget(DKIM_PRIV_KEYS, material.private_key_field) == material.private_key
        )
    except redis.RedisError as exc:
        result.warnings.append(SecretWarning(f"DKIM restore for {domain} failed: {exc}"))
        return result
    if not verified:
        result.warnings.append(
            SecretWarning(f"DKIM key verification failed for {domain}; check it in the mailcow UI")
        )
        return result
    result.restored = True
    logger.info("dkim_restored domain=%s selector=%s", domain, material.selector)
    return result


def normalize_public_key(pem: str) -> bytes:
    # Compare key material, not PEM formatting; unparsable input falls back to text.
    try:
        key = serialization.load_pem_public_key(pem.strip().encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return pem.strip().encode("utf-8")
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


@dataclass(frozen=True)
class CryptComparison:
    # Outcome of comparing backup and live mail_crypt public keys.
    outcome: str
    backup_public_key: str | None = None
    live_public_key: str | None = None

    @property
    def restore_planned(self) -> bool:
        return self.outcome in {CRYPT_MISMATCH, CRYPT_LIVE_UNREADABLE}

    @property
    def requires_override(self) -> bool:
        return self.outcome == CRYPT_MISMATCH

    def warning(self) -> RestoreWarning | None:
        if self.outcome == CRYPT_MISMATCH:
            return SecretMismatchWarning("mail_crypt keys differ between backup and live server")
        if self.outcome == CRYPT_BACKUP_UNREADABLE:
            return SecretWarning("could not read the public key from the crypt backup; keys not compared")
        if self.outcome == CRYPT_LIVE_UNREADABLE:
            return SecretWarning("could not read the live mail_crypt public key; backup keys will be restored")
        return None


def _extract_keys_script(asset: ArchiveInfo) -> str:
    archive = shlex.quote(f"/backup/{asset.filename}")
    return (
        "set -euo pipefail; mkdir -p /extract; cd /extract; "
        f"{asset.decompress_cmd} < {archive} | tar -xf -; "
        f'priv=$(find /extract -name {CRYPT_PRIVATE_KEY} -type f | head -1); '
        f'pub=$(find /extract -name {CRYPT_PUBLIC_KEY} -type f | head -1); '
    )


def read_backup_crypt_public_key(runtime: ContainerRuntime, location: Path, asset: ArchiveInfo, *, image: str) -> str | None:
    # Stream only the public key member; the private key is never extracted here.
    archive = shlex.quote(f"/backup/{asset.filename}")
    script = (
        f"set -o pipefail; {asset.decompress_cmd} < {archive} "
        f"| tar -xOf - --wildcards '*{CRYPT_PUBLIC_KEY}'"
    )
    result = runtime.run_helper(image, script, mounts=[Mount(str(location), "/backup")])
    if not result.ok or not result.stdout.strip():
        logger.warning("crypt_backup_pubkey_unreadable exit=%s", result.exit_code)
        return None
    return result.stdout


def read_live_crypt_public_key(runtime: ContainerRuntime, volume: str, *, image: str) -> str | None:
    if not runtime.volume_exists(volume):
        logger.warning("crypt_volume_missing volume=%s", volume)
        return None
    result = runtime.run_helper(image, f"cat /crypt/{CRYPT_PUBLIC_KEY}", mounts=[Mount(volume, "/crypt")])
    if not result.ok or not result.stdout.strip():
        return None
    return result.stdout


def compare_crypt_keys(
    runtime: ContainerRuntime,
    location: Path,
    asset: ArchiveInfo,
    *,
    volume: str,
    image: str,
) -> CryptComparison:
    """Compare mail_crypt public keys between the backup and the live crypt volume."""
    if not asset.present:
        return CryptComparison(outcome=CRYPT_ABSENT)
    backup_key = read_backup_crypt_public_key(runtime, location, asset, image=image)
    if backup_key is None:
        return CryptComparison(outcome=CRYPT_BACKUP_UNREADABLE)
    live_key = read_live_crypt_public_key(runtime, volume, image=image)
    if live_key is None:
        return CryptComparison(outcome=CRYPT_LIVE_UNREADABLE, backup_public_key=backup_key)
    if normalize_public_key(backup_key) == normalize_public_key(live_key):
        outcome = CRYPT_MATCH
    else:
        outcome = CRYPT_MISMATCH
    logger.info("crypt_keys_compared outcome=%s", outcome)
    return CryptComparison(outcome=outcome, backup_public_key=backup_key, live_public_key=live_key)


def restore_crypt_keys(
    runtime: ContainerRuntime,
    location: Path,
    asset: ArchiveInfo,
    comparison: CryptComparison,
    *,
    volume: str,
    image: str,
    backup_path: Path,
    dovecot: str,
    owner_uid: int,
) -> SecretResult:
    """Replace the live mail_crypt key pair with the backup's, after saving the current pair."""
    result = SecretResult()
    try:
        backup_path.mkdir(parents=True, exist_ok=True)
        os.chmod(backup_path, 0o700)
    except OSError as exc:
        result.warnings.append(SecretWarning(f"mail_crypt keys not restored: cannot create {backup_path}: {exc}"))
        return result
    try:
        saved = runtime.run_helper(
            image,
            f"for key in {CRYPT_PRIVATE_KEY} {CRYPT_PUBLIC_KEY}; do "
            'if [ -f "/crypt/$key" ]; then cp "/crypt/$key" "/keybackup/$key"; fi; done',
            mounts=[Mount(volume, "/crypt"), Mount(str(backup_path), "/keybackup", read_only=False)],
        )
    except RuntimeUnavailableError as exc:
        result.warnings.append(SecretWarning(f"mail_crypt keys not restored: live keys could not be backed up: {exc}"))
        return result
    if comparison.requires_override and (not saved.ok or not (backup_path / CRYPT_PRIVATE_KEY).exists()):
        result.warnings.append(
            SecretWarning("mail_crypt keys not restored: the live private key could not be backed up first")
        )
        return result
    result.backup_path = backup_path
    logger.info("crypt_keys_backed_up path=%s", backup_path)

    script = _extract_keys_script(asset) + (
        'if [ -z "$priv" ] || [ -z "$pub" ]; then echo "key files not found in crypt backup" >&2; exit 1; fi; '
        f'cp "$priv" /crypt/{CRYPT_PRIVATE_KEY}; cp "$pub" /crypt/{CRYPT_PUBLIC_KEY}; '
        f"chown {owner_uid}:{owner_uid} /crypt/{CRYPT_PRIVATE_KEY} /crypt/{CRYPT_PUBLIC_KEY}"
    )
    try:
        was_running = runtime.stop_service(dovecot)
        try:
            copied = runtime.run_helper(
                image,
                script,
                mounts=[Mount(str(location), "/backup"), Mount(volume, "/crypt", read_only=False)],
            )
        finally:
            if was_running:
                runtime.start_service(dovecot)
    except RuntimeUnavailableError as exc:
        result.warnings.append(SecretWarning(f"mail_crypt key restore failed: {exc}"))
        return result
    if not copied.ok:
        result.warnings.append(SecretWarning(f"mail_crypt key restore failed: {copied.stderr.strip()}"))
        return result

    try:
        live_key = read_live_crypt_public_key(runtime, volume, image=image)
    except RuntimeUnavailableError as exc:
        result.warnings.append(SecretWarning(f"mail_crypt keys copied but read-back failed: {exc}"))
        return result
    if live_key is None or comparison.backup_public_key is None or (
        normalize_public_key(live_key) != normalize_public_key(comparison.backup_public_key)
    ):
        result.warnings.append(SecretWarning("mail_crypt public key read-back does not match the backup"))
        return result
    result.restored = True
    logger.info("crypt_keys_restored volume=%s", volume)
    return result
