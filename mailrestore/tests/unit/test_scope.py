from __future__ import annotations

import pytest

from mailrestore.core.errors import ConfigurationError
from mailrestore.domain.scope import parse_scope


def test_domain_target_parses_to_domain_scope() -> None:
    # Targets without "@" restore a whole domain, normalised to lower case.
    scope = parse_scope("Example.COM")
    assert scope.kind == "domain"
    assert scope.identifier == "example.com"
    assert scope.path_prefix == "example.com"
    assert scope.doveadm_user == "*@example.com"
    assert scope.lock_key == "example.com"


def test_mailbox_target_parses_to_mailbox_scope() -> None:
    # An address selects one mailbox; its lock is shared with its domain.
    scope = parse_scope("Alice.Smith@Example.com")
    assert scope.is_mailbox
    assert scope.identifier == "alice.smith@example.com"
    assert scope.path_prefix == "example.com/alice.smith"
    assert scope.doveadm_user == "alice.smith@example.com"
    assert scope.lock_key == "example.com"
    assert str(scope) == "alice.smith@example.com"


@pytest.mark.parametrize("target", ["", "localhost", "bad domain.com", "@example.com", "a b@example.com", "a@nodot"])
def test_invalid_targets_are_rejected(target: str) -> None:
    # Malformed names fail before any backup or container is touched.
    with pytest.raises(ConfigurationError):
        parse_scope(target)
