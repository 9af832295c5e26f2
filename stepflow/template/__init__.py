"""
Template module.
Implements ${...} expression parsing, template contexts and lazy resolution
of the providers, modules and actions a template references.
"""

from .context import ConfigContext, ErrorContext, LazyValue, StepContext, build_step_references
from .expressions import deep_evaluate, evaluate_template, parse_template
from .scanner import ReferenceScanResult, scan_template_references
from .lazy import ResolvedNeeds, expand_context_for, resolve_template_needs

__all__ = [
    'ConfigContext',
    'ErrorContext',
    'LazyValue',
    'StepContext',
    'build_step_references',
    'deep_evaluate',
    'evaluate_template',
    'parse_template',
    'ReferenceScanResult',
    'scan_template_references',
    'ResolvedNeeds',
    'expand_context_for',
    'resolve_template_needs',
]
