"""
Secrets handling and masking.

- Secrets are declared by name in the project document and read from the
  environment stepflow runs in
- Empty strings count as present
- Missing secrets are reported, and a template reading one fails with a
  missing-key error listing what is available
- Secret values are masked in captured step output, step logs and log records
- Step env overrides secrets when keys collide, and the override is masked too
"""

import os
import re
import threading
from typing import Any, Dict, List, Optional, Set
from dataclasses import dataclass


@dataclass
class SecretsContext:
    """Secrets and environment resolved for one child process."""
    declared_secrets: List[str]  # Names of env vars declared as secrets
    missing_secrets: List[str]  # Declared but not set
    secret_values: Dict[str, str]  # Values to mask (including from env overrides)
    child_env: Dict[str, str]  # Final environment for the child process


class SecretsManager:
    """
    Resolves declared secrets, composes child process environments and masks
    secret values in text.
    """

    def __init__(self, declared_secrets: Optional[List[str]] = None):
        self.declared_secrets = list(declared_secrets or [])
        self._masked_values: Set[str] = set()
        self._lock = threading.Lock()

    def get_secret_values(self) -> Dict[str, str]:
        """
        Return the values of every declared secret that is set.

        The values are registered for masking.
        """
        values = {}
        for name in self.declared_secrets:
            if name in os.environ:
                values[name] = os.environ[name]
        self._track(values.values())
        return values

    def get_missing_secrets(self) -> List[str]:
        return [name for name in self.declared_secrets if name not in os.environ]

    def resolve_secrets(
        self,
        step_env: Optional[Dict[str, str]] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> SecretsContext:
        """
        Compose the environment for a child process.

        The environment stepflow runs in is the base, then step env, then extra
        env (for trace propagation) on top.

        Args:
            step_env: Step-specific environment overrides
            extra_env: Variables that always win, e.g. trace propagation

        Returns:
            SecretsContext with the child env and the values to mask
        """
        context = SecretsContext(
            declared_secrets=list(self.declared_secrets),
            missing_secrets=[],
            secret_values={},
            child_env=os.environ.copy(),
        )

        for secret_name in context.declared_secrets:
            if secret_name in os.environ:
                context.secret_values[secret_name] = os.environ[secret_name]
            else:
                context.missing_secrets.append(secret_name)

        if step_env:
            for key, value in step_env.items():
                context.child_env[key] = str(value)
                if key in context.declared_secrets:
                    context.secret_values[key] = str(value)

        if extra_env:
            context.child_env.update(extra_env)

        self._track(context.secret_values.values())
        return context

    def _track(self, values):
        with self._lock:
            for value in values:
                if value:  # Don't mask empty strings
                    self._masked_values.add(value)

    def mask_text(self, text: str) -> str:
        """
        Replace known secret values in text with '***'.

        Args:
            text: Text potentially containing secrets

        Returns:
            Text with secrets masked
        """
        if not text or not self._masked_values:
            return text

        masked = text
        # Longer values first so a secret containing another one is masked whole
        for secret_value in sorted(self._masked_values, key=len, reverse=True):
            if secret_value in masked:
                masked = re.sub(re.escape(secret_value), '***', masked)

        return masked

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively mask secrets in a dictionary (for step outputs and results).

        Args:
            data: Dictionary potentially containing secrets

        Returns:
            Dictionary with secrets masked
        """
        if not data or not self._masked_values:
            return data

        masked = {}
        for key, value in data.items():
            if isinstance(value, str):
                masked[key] = self.mask_text(value)
            elif isinstance(value, dict):
                masked[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    self.mask_text(item) if isinstance(item, str) else item
                    for item in value
                ]
            else:
                masked[key] = value

        return masked

    def clear_masked_values(self):
        """Clear the set of values to mask (useful for testing)."""
        with self._lock:
            self._masked_values.clear()


class SecretsMaskingFilter:
    """
    Logging filter for masking secrets in log records.

    Attached to the step log capture handler and the CLI's console handler.
    """

    def __init__(self, secrets_manager: SecretsManager):
        self.secrets_manager = secrets_manager

    def filter(self, record):
        """Mask the record's message and string args. Always passes the record through."""
        if hasattr(record, 'msg'):
            record.msg = self.secrets_manager.mask_text(str(record.msg))

        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, dict):
                record.args = self.secrets_manager.mask_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self.secrets_manager.mask_text(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True
