"""Password policies and random password generation."""
from __future__ import annotations
import logging
import secrets
import string
from dataclasses import dataclass, fields
from typing import Iterable, List, Optional

from .errors import InvalidPasswordRuleConf

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD_LENGTH = 16
SPECIAL_CHARS = "!@#$%^&*"


@dataclass
class PasswordPolicy:
    """Character-class rules; ``None`` means "not set by this policy"."""
    key: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    uppercase: Optional[int] = None
    lowercase: Optional[int] = None
    digit: Optional[int] = None
    special: Optional[int] = None

    def validate(self, password: str) -> List[str]:
        """Return the rule violations of ``password`` (empty when it complies)."""
        violations = []
        if self.min_length and len(password) < self.min_length:
            violations.append(f"shorter than {self.min_length}")
        if self.max_length and len(password) > self.max_length:
            violations.append(f"longer than {self.max_length}")
        for name, chars in _CLASSES:
            required = getattr(self, name) or 0
            if sum(1 for c in password if c in chars) < required:
                violations.append(f"fewer than {required} {name} characters")
        return violations


_CLASSES = (
    ("uppercase", string.ascii_uppercase),
    ("lowercase", string.ascii_lowercase),
    ("digit", string.digits),
    ("special", SPECIAL_CHARS),
)


def merge_policies(policies: Iterable[Optional[PasswordPolicy]]) -> PasswordPolicy:
    """Merge policies ordered from least to most specific.

    A value set by a later policy overrides the earlier one.

    Raises:
        InvalidPasswordRuleConf: The merged rules cannot be satisfied together
    """
    merged = PasswordPolicy(key="merged")
    for policy in policies:
        if policy is None:
            continue
        for f in fields(policy):
            if f.name == "key":
                continue
            value = getattr(policy, f.name)
            if value is not None:
                setattr(merged, f.name, value)

    required = sum(getattr(merged, name) or 0 for name, _ in _CLASSES)
    if merged.max_length:
        if merged.min_length and merged.min_length > merged.max_length:
            raise InvalidPasswordRuleConf(
                f"Minimum length {merged.min_length} exceeds maximum length {merged.max_length}")
        if required > merged.max_length:
            raise InvalidPasswordRuleConf(
                f"{required} required characters exceed maximum length {merged.max_length}")
    return merged


def generate_temp_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Generate a secure random password.

    Args:
        length: Password length (default: 16)

    Returns:
        Random password string
    """
    alphabet = string.ascii_letters + string.digits + SPECIAL_CHARS
    return "".join(secrets.choice(alphabet) for _ in range(length))


class PasswordGenerator:
    """Generate passwords compliant with a chain of policies."""

    def generate(self, policies: Iterable[Optional[PasswordPolicy]]) -> str:
        """Generate a password for the policy chain, root-first.

        Falls back to a plain random password when the chain cannot be
        satisfied.
        """
        try:
            policy = merge_policies(policies)
        except InvalidPasswordRuleConf as e:
            logger.error(f"Could not merge password policies, generating plain password: {e}")
            return generate_temp_password()
        return self._generate(policy)

    @staticmethod
    def _generate(policy: PasswordPolicy) -> str:
        length = max(policy.min_length or 0, DEFAULT_PASSWORD_LENGTH)
        if policy.max_length:
            length = min(length, policy.max_length)

        chars = []
        for name, alphabet in _CLASSES:
            chars.extend(secrets.choice(alphabet) for _ in range(getattr(policy, name) or 0))

        alphabet = string.ascii_letters + string.digits
        while len(chars) < length:
            chars.append(secrets.choice(alphabet))

        rng = secrets.SystemRandom()
        rng.shuffle(chars)
        return "".join(chars)
