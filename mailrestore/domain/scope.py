from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal

from mailrestore.core.errors import ConfigurationError


ScopeKind = Literal["domain", "mailbox"]

_DOMAIN_PATTERN = re.compile(r"^(?=.{3,253}$)[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?)+$")
_LOCAL_PART_PATTERN = re.compile(r"^[A-Za-z0-9._%+=-]{1,64}$")


@dataclass(frozen=True)
class Scope:
    """Boundary of a restore: a whole domain or one mailbox inside it."""

    kind: ScopeKind
    domain: str
    local_part: str | None = None

    @property
    def is_mailbox(self) -> bool:
        return self.kind == "mailbox"

    @property
    def identifier(self) -> str:
        # Primary entity key: domain name or full mailbox address.
        if self.local_part is None:
            return self.domain
        return f"{self.local_part}@{self.domain}"

    @property
    def path_prefix(self) -> str:
        # Relative mail tree location under the vmail root.
        if self.local_part is None:
            return self.domain
        return f"{self.domain}/{self.local_part}"

    @property
    def doveadm_user(self) -> str:
        # doveadm user mask covering every mailbox in scope.
        if self.local_part is None:
            return f"*@{self.domain}"
        return self.identifier

    @property
    def lock_key(self) -> str:
        # Mailbox restores serialize with restores of their domain.
        return self.domain

    @property
    def label(self) -> str:
        return "mailbox" if self.is_mailbox else "domain"

    def __str__(self) -> str:
        return self.identifier


def parse_scope(target: str) -> Scope:
    # An address with "@" selects a mailbox restore, anything else a domain restore.
    raw = (target or "").strip()
    if "@" in raw:
        local_part, _, domain_name = raw.rpartition("@")
        domain_name = domain_name.lower()
        if not _LOCAL_PART_PATTERN.match(local_part) or not _DOMAIN_PATTERN.match(domain_name):
            raise ConfigurationError(
                f"invalid mailbox address: {target!r}",
                remediation="Pass a full mailbox address such as user@example.com.",
            )
        return Scope(kind="mailbox", domain=domain_name, local_part=local_part.lower())
    domain_name = raw.lower()
    if not _DOMAIN_PATTERN.match(domain_name):
        raise ConfigurationError(
            f"invalid domain name: {target!r}",
            remediation="Pass a fully qualified domain such as example.com.",
        )
    return Scope(kind="domain", domain=domain_name)
