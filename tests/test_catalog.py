"""Tests for the node definition catalog."""

import json

import pytest
import yaml

from nodeflow.core.catalog import CatalogError, NodeCatalog, load_catalog
from nodeflow.core.graph_schema import NodeDefinition


class TestRegistration:
    """Tests for register/get."""

    def test_first_registration_wins(self):
        """Test that a duplicate id keeps the first definition."""
        catalog = NodeCatalog()
        assert catalog.register(NodeDefinition(id="x", name="First"))
        assert not catalog.register(NodeDefinition(id="x", name="Second"))

        assert catalog.get("x").name == "First"
        assert len(catalog) == 1

    def test_replace(self):
        """Test explicit replacement."""
        catalog = NodeCatalog([NodeDefinition(id="x", name="First")])
        catalog.register(NodeDefinition(id="x", name="Second"), replace=True)

        assert catalog.get("x").name == "Second"

    def test_unknown_type(self):
        """Test lookup of an unregistered id."""
        assert NodeCatalog().get("missing") is None
        assert "missing" not in NodeCatalog()


class TestBuiltinCatalog:
    """Tests for the packaged definitions."""

    def test_builtin_node_types(self, builtin_catalog):
        """Test that the core node types are present."""
        for type_id in ("manual_trigger", "if_node", "switch_node", "merge_node", "code_node", "http_request"):
            assert type_id in builtin_catalog
        assert builtin_catalog.load_errors == []

    def test_merge_inputs(self, builtin_catalog):
        """Test that the merge node declares two inputs."""
        assert builtin_catalog.get("merge_node").input_handles() == ["input1", "input2"]

    def test_code_node_has_code_property(self, builtin_catalog):
        """Test the code property used as the script source."""
        definition = builtin_catalog.get("code_node")
        assert definition.execution_code is None
        assert [p.type for p in definition.properties] == ["code"]
        assert definition.processing_mode == "all"


class TestFileLoading:
    """Tests for loading definitions from files."""

    def test_load_nodes_mapping(self, definitions_file):
        """Test a YAML file with a nodes list."""
        catalog = NodeCatalog()

        assert catalog.load_file(definitions_file) == 2
        assert catalog.get("shout_node").version == "2"
        assert "upper" in catalog.get("upper_node").execution_code

    def test_load_json_list(self, tmp_path):
        """Test a JSON file holding a list."""
        path = tmp_path / "defs.json"
        path.write_text(json.dumps([{"id": "a", "name": "A", "version": 1}]))

        catalog = NodeCatalog()
        assert catalog.load_file(path) == 1

    def test_single_definition_file(self, tmp_path):
        """Test a file holding one definition mapping."""
        path = tmp_path / "one.yaml"
        path.write_text(yaml.safe_dump({"id": "one", "name": "One", "version": 1}))

        catalog = NodeCatalog()
        catalog.load_file(path)
        assert "one" in catalog

    def test_invalid_entries_skipped(self, tmp_path):
        """Test that bad entries are recorded and the rest still load."""
        path = tmp_path / "mixed.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "nodes": [
                        {"id": "good", "name": "Good", "version": 1},
                        {"id": "no_version", "name": "Missing"},
                        "not a mapping",
                        {"id": "bad_env", "name": "Bad", "version": 1, "execution_environment": "moon"},
                    ]
                }
            )
        )
        catalog = NodeCatalog()

        assert catalog.load_file(path) == 1
        messages = [message for _, message in catalog.load_errors]
        assert "Definition missing required fields: version" in messages
        assert "Definition entry is not a mapping" in messages
        assert any(m.startswith("bad_env: ") for m in messages)

    def test_execution_file(self, tmp_path):
        """Test loading code from a sibling .py file."""
        (tmp_path / "scripted.yaml").write_text(
            yaml.safe_dump({"id": "scripted", "name": "Scripted", "version": 1, "execution_file": True})
        )
        (tmp_path / "scripted.py").write_text("return {'ok': True}\n")

        catalog = NodeCatalog()
        catalog.load_file(tmp_path / "scripted.yaml")

        assert catalog.get("scripted").execution_code == "return {'ok': True}\n"

    def test_execution_file_missing(self, tmp_path):
        """Test that a missing code file is a load error."""
        path = tmp_path / "defs.yaml"
        path.write_text(yaml.safe_dump([{"id": "ghost", "name": "G", "version": 1, "executionFile": True}]))

        catalog = NodeCatalog()
        catalog.load_file(path)

        assert "ghost" not in catalog
        assert "no .py file found" in catalog.load_errors[0][1]

    def test_unreadable_file(self, tmp_path):
        """Test that parse failures raise CatalogError."""
        path = tmp_path / "broken.yaml"
        path.write_text("nodes: [unclosed")

        with pytest.raises(CatalogError, match="Cannot read node definitions"):
            NodeCatalog().load_file(path)

    def test_load_directory(self, tmp_path, definitions_file):
        """Test loading every definition file under a directory."""
        (tmp_path / "notes.txt").write_text("ignored")

        catalog = NodeCatalog()
        assert catalog.load_path(tmp_path) == 2


class TestLoadCatalog:
    """Tests for load_catalog."""

    def test_user_definitions_override_builtins(self, tmp_path):
        """Test that user files load before built-ins."""
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump([{"id": "if_node", "name": "My If", "version": 2}]))

        catalog = load_catalog([path])

        assert catalog.get("if_node").name == "My If"
        assert "merge_node" in catalog

    def test_without_builtins(self, definitions_file):
        """Test excluding the packaged definitions."""
        catalog = load_catalog([definitions_file], include_builtin=False)

        assert len(catalog) == 2
        assert "if_node" not in catalog
