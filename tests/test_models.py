"""Tests for action references and definitions."""

import pytest

from wskdebug_core.models import ActionDefinition, ActionRef, Layout, MountDescriptor


class TestActionRef:
    def test_plain_name_uses_default_namespace(self):
        ref = ActionRef.parse("myaction", "test")
        assert ref == ActionRef("test", "myaction")
        assert ref.qualified == "/test/myaction"

    def test_packaged_name(self):
        assert ActionRef.parse("pkg/myaction") == ActionRef("_", "pkg/myaction")

    def test_fully_qualified(self):
        assert ActionRef.parse("/ns/pkg/myaction", "other") == ActionRef("ns", "pkg/myaction")

    def test_with_suffix(self):
        assert ActionRef("ns", "a").with_suffix("_x") == ActionRef("ns", "a_x")

    @pytest.mark.parametrize("value", ["", "/", "/ns", "/ns/"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            ActionRef.parse(value)


class TestActionDefinition:
    def test_views(self):
        d = ActionDefinition.from_json({
            "exec": {"kind": "nodejs:10", "code": "x", "binary": True, "main": "handler"},
            "limits": {"timeout": 60000},
            "annotations": [{"key": "wskdebug", "value": True}],
        })
        assert d.kind == "nodejs:10"
        assert d.binary is True
        assert d.main == "handler"
        assert d.timeout_ms == 60000
        assert d.is_agent

    def test_marker_must_be_true(self):
        d = ActionDefinition.from_json({"annotations": [{"key": "wskdebug", "value": "yes"}]})
        assert not d.is_agent

    def test_update_body_keeps_only_writable_fields(self):
        d = ActionDefinition.from_json({
            "exec": {"kind": "nodejs:10"}, "limits": {}, "annotations": [],
            "parameters": [], "name": "a", "namespace": "ns", "version": "0.0.1",
        })
        assert set(d.to_update_body()) == {"exec", "limits", "annotations", "parameters"}

    def test_set_annotation_replaces(self):
        d = ActionDefinition.from_json({"annotations": [{"key": "k", "value": 1}]})
        d.set_annotation("k", 2)
        d.set_annotation("other", 3)
        assert d.annotations == [{"key": "k", "value": 2}, {"key": "other", "value": 3}]

    def test_copy_is_deep(self):
        d = ActionDefinition.from_json({"exec": {"code": "a"}})
        c = d.copy()
        c.exec["code"] = "b"
        assert d.code == "a"


def test_container_entry():
    mount = MountDescriptor("/src", "/code/", "lib/action.js", Layout.NESTED)
    assert mount.container_entry == "/code/lib/action.js"
