"""Tests for the static template reference scanner."""

import pytest

from stepflow.exceptions import ConfigurationError
from stepflow.graph.types import ActionKind, ActionTemplateReference
from stepflow.template.context import ConfigContext
from stepflow.template.scanner import scan_template_references


@pytest.fixture
def context():
    return ConfigContext({
        "var": {"service": "api"},
        "args": {"$all": []},
    })


class TestReferenceScanner:
    """Classification of template lookups."""

    def test_empty_value_has_no_references(self, context):
        assert not scan_template_references({}, context).has_references
        assert not scan_template_references([], context).has_references
        assert not scan_template_references("plain text", context).has_references

    def test_provider_reference(self, context):
        result = scan_template_references({"x": "${providers.foo.outputs.bar}"}, context)
        assert result.provider_names == {"foo"}
        assert result.has_references
        assert result.action_refs == ()

    def test_module_reference(self, context):
        result = scan_template_references(["echo ${modules.backend.path}"], context)
        assert result.module_names == {"backend"}

    def test_cheap_namespaces_are_not_references(self, context):
        value = {
            "a": "${args.$all}",
            "b": "${var.service} ${project.name} ${steps.first.outputs.stdout}",
            "c": "${local.env.HOME || environment.name}",
        }
        assert not scan_template_references(value, context).has_references

    def test_action_reference_with_key_path(self, context):
        result = scan_template_references("${actions.build.api.outputs.stdout}", context)
        assert result.action_refs == (
            ActionTemplateReference(ActionKind.BUILD, "api", ("outputs", "stdout")),
        )

    def test_action_reference_without_key_path(self, context):
        result = scan_template_references("${actions.test.unit}", context)
        assert result.action_refs == (ActionTemplateReference(ActionKind.TEST, "unit", ()),)

    def test_runtime_namespaces_map_to_deploy_and_run(self, context):
        value = {
            "url": "${runtime.services.web.outputs.url}",
            "log": "${runtime.tasks.migrate.outputs.log}",
        }
        refs = scan_template_references(value, context).action_refs
        assert ActionTemplateReference(ActionKind.DEPLOY, "web", ("outputs", "url")) in refs
        assert ActionTemplateReference(ActionKind.RUN, "migrate", ("outputs", "log")) in refs

    def test_unknown_runtime_namespace_is_ignored(self, context):
        assert not scan_template_references("${runtime.other.x}", context).has_references

    def test_invalid_action_kind(self, context):
        with pytest.raises(ConfigurationError) as exc_info:
            scan_template_references("${actions.compile.api.outputs.x}", context)
        assert "Invalid action kind 'compile'" in str(exc_info.value)

    def test_incomplete_action_reference_is_ignored(self, context):
        assert not scan_template_references("${actions.build}", context).has_references

    def test_dynamic_key_is_evaluated(self, context):
        result = scan_template_references("${actions.deploy[var.service].version}", context)
        assert result.action_refs == (
            ActionTemplateReference(ActionKind.DEPLOY, "api", ("version",)),
        )

    def test_dynamic_key_without_context_is_ignored(self):
        result = scan_template_references("${actions.deploy[var.service].version}")
        assert not result.has_references

    def test_references_inside_functions_and_operators(self, context):
        value = "${join(actions.build.api.outputs.files, ',') || providers.k8s.outputs.ns}"
        result = scan_template_references(value, context)
        assert result.provider_names == {"k8s"}
        assert result.action_refs[0].name == "api"

    def test_duplicates_are_collapsed(self, context):
        value = ["${actions.build.api.version}", "${actions.build.api.version}", "${providers.a.x} ${providers.a.y}"]
        result = scan_template_references(value, context)
        assert len(result.action_refs) == 1
        assert result.provider_names == {"a"}

    def test_invalid_templates_are_skipped(self, context):
        value = {"broken": "${providers.a", "ok": "${providers.b.x}"}
        assert scan_template_references(value, context).provider_names == {"b"}

    def test_dict_keys_are_not_scanned(self, context):
        assert not scan_template_references({"${providers.a.x}": "value"}, context).has_references
