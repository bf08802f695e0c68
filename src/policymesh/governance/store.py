"""
Policy Store

Versioned policy persistence. Readers work on an immutable snapshot that
is replaced atomically whenever a policy is published or reverted, so
readers never block writers and vice versa.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from policymesh.exceptions import PolicyNotFoundError, ValidationError

from .models import Policy, PolicyVersion

logger = logging.getLogger(__name__)

VersionListener = Callable[[PolicyVersion], None]


@dataclass(frozen=True)
class PolicySnapshot:
    """An immutable view of every policy's current version."""

    generation: int = 0
    policies: Mapping[str, Policy] = field(default_factory=lambda: MappingProxyType({}))
    versions: Mapping[str, PolicyVersion] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, policy_id: str) -> Optional[Policy]:
        return self.policies.get(policy_id)

    def policy_ids(self) -> list[str]:
        return sorted(self.policies)

    def version_map(self, policy_ids: Optional[Iterable[str]] = None) -> dict[str, int]:
        """Map policy id to current version number, optionally restricted."""
        ids = self.policies.keys() if policy_ids is None else policy_ids
        return {pid: self.policies[pid].version for pid in ids if pid in self.policies}


def content_hash(policy: Policy) -> str:
    """SHA-256 over the policy's canonical, version-independent content."""
    canonical = json.dumps(policy.content(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


class PolicyStore:
    """
    In-memory versioned policy store.

    Every publication of changed content creates a new ``PolicyVersion``
    whose ``predecessor`` is the version it replaced. Republishing
    identical content is a no-op and returns the current version.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._snapshot = PolicySnapshot()
        self._versions: dict[str, list[PolicyVersion]] = {}
        self._contents: dict[tuple[str, int], Policy] = {}
        self._listeners: list[VersionListener] = []

    def snapshot(self) -> PolicySnapshot:
        """Return the current snapshot. Never blocks."""
        return self._snapshot

    def subscribe(self, listener: VersionListener) -> None:
        """Call ``listener`` whenever a policy's current version changes."""
        self._listeners.append(listener)

    def publish(self, policy: Policy, author: str = "system") -> PolicyVersion:
        """
        Publish a policy, creating a new version if its content changed.

        Raises:
            ValidationError: If the policy is malformed.
        """
        return self.publish_many([policy], author=author)[0]

    def publish_many(self, policies: Iterable[Policy], author: str = "system") -> list[PolicyVersion]:
        """Publish several policies in a single snapshot swap."""
        policies = list(policies)
        self._validate(policies)

        changed: list[PolicyVersion] = []
        results: list[PolicyVersion] = []
        with self._write_lock:
            current = dict(self._snapshot.policies)
            versions = dict(self._snapshot.versions)
            for policy in policies:
                digest = content_hash(policy)
                previous = versions.get(policy.id)
                if previous is not None and previous.content_hash == digest:
                    results.append(previous)
                    continue

                history = self._versions.setdefault(policy.id, [])
                number = history[-1].version + 1 if history else 1
                version = PolicyVersion(
                    policy_id=policy.id,
                    version=number,
                    content_hash=digest,
                    author=author,
                    predecessor=previous.version if previous else None,
                )
                stored = policy.model_copy(update={"version": number})
                history.append(version)
                self._contents[(policy.id, number)] = stored
                current[policy.id] = stored
                versions[policy.id] = version
                changed.append(version)
                results.append(version)

            if changed:
                self._swap(current, versions)

        for version in changed:
            logger.info(
                "Published policy %s v%d (author=%s)", version.policy_id, version.version, author
            )
            self._notify(version)
        return results

    def revert(self, policy_id: str, author: str = "system") -> PolicyVersion:
        """
        Point a policy back at its predecessor version.

        Raises:
            PolicyNotFoundError: If the policy is unknown.
            ValidationError: If the current version has no predecessor.
        """
        with self._write_lock:
            current_version = self._snapshot.versions.get(policy_id)
            if current_version is None:
                raise PolicyNotFoundError(f"Unknown policy '{policy_id}'")
            if current_version.predecessor is None:
                raise ValidationError(
                    f"Policy '{policy_id}' v{current_version.version} has no predecessor"
                )
            target = self._find_version(policy_id, current_version.predecessor)
            current = dict(self._snapshot.policies)
            versions = dict(self._snapshot.versions)
            current[policy_id] = self._contents[(policy_id, target.version)]
            versions[policy_id] = target
            self._swap(current, versions)

        logger.warning(
            "Reverted policy %s v%d -> v%d (author=%s)",
            policy_id, current_version.version, target.version, author,
        )
        self._notify(target)
        return target

    def get(self, policy_id: str, version: Optional[int] = None) -> Policy:
        """Return the current policy, or a specific historical version."""
        if version is None:
            policy = self._snapshot.get(policy_id)
            if policy is None:
                raise PolicyNotFoundError(f"Unknown policy '{policy_id}'")
            return policy
        try:
            return self._contents[(policy_id, version)]
        except KeyError:
            raise PolicyNotFoundError(f"Unknown policy version {policy_id}@v{version}") from None

    def current_version(self, policy_id: str) -> PolicyVersion:
        version = self._snapshot.versions.get(policy_id)
        if version is None:
            raise PolicyNotFoundError(f"Unknown policy '{policy_id}'")
        return version

    def history(self, policy_id: str) -> list[PolicyVersion]:
        """All versions ever published for a policy, oldest first."""
        return list(self._versions.get(policy_id, []))

    def predecessor(self, policy_id: str, version: int) -> Optional[int]:
        """The version a given version replaced, if any."""
        return self._find_version(policy_id, version).predecessor

    def list_policies(self) -> list[str]:
        return self._snapshot.policy_ids()

    def __len__(self) -> int:
        return len(self._snapshot.policies)

    # ── internals ──────────────────────────────────────────────

    def _find_version(self, policy_id: str, number: int) -> PolicyVersion:
        for version in self._versions.get(policy_id, []):
            if version.version == number:
                return version
        raise PolicyNotFoundError(f"Unknown policy version {policy_id}@v{number}")

    def _swap(self, policies: dict[str, Policy], versions: dict[str, PolicyVersion]) -> None:
        self._snapshot = PolicySnapshot(
            generation=self._snapshot.generation + 1,
            policies=MappingProxyType(policies),
            versions=MappingProxyType(versions),
        )

    def _notify(self, version: PolicyVersion) -> None:
        for listener in self._listeners:
            listener(version)

    @staticmethod
    def _validate(policies: list[Policy]) -> None:
        errors: list[str] = []
        seen: set[str] = set()
        for policy in policies:
            if policy.id in seen:
                errors.append(f"policy '{policy.id}' appears more than once in one publication")
            seen.add(policy.id)
            if not policy.rules:
                errors.append(f"policy '{policy.id}' has no rules")
        if errors:
            raise ValidationError("Policy publication rejected", errors)
