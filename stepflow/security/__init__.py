"""Security module for secrets handling and masking."""

from .secrets import SecretsContext, SecretsManager, SecretsMaskingFilter

__all__ = ['SecretsContext', 'SecretsManager', 'SecretsMaskingFilter']
