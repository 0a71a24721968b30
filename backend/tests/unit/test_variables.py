# backend/tests/unit/test_variables.py

from chatflow.workflows.variables import VariableEnvironment


class TestVariableEnvironment:

    def test_set_stringifies_values(self):
        env = VariableEnvironment()
        env.set("age", 20)
        env.set("vip", True)
        env.set("note", None)
        assert env.get("age") == "20"
        assert env.get("vip") == "True"
        assert env.get("note") == ""

    def test_last_write_wins(self):
        env = VariableEnvironment({"name": "Sam"})
        env.set("name", "Alex")
        assert env.get("name") == "Alex"

    def test_get_unknown_returns_none(self):
        assert VariableEnvironment().get("missing") is None

    def test_interpolate_replaces_known_names(self):
        env = VariableEnvironment({"name": "Sam", "order": "1042"})
        assert env.interpolate("Hi {{name}}, order #{{order}} shipped") == "Hi Sam, order #1042 shipped"

    def test_unknown_placeholder_is_left_verbatim(self):
        assert VariableEnvironment().interpolate("hi {{missing}}") == "hi {{missing}}"

    def test_identifiers_are_case_sensitive(self):
        env = VariableEnvironment({"Name": "Sam"})
        assert env.interpolate("{{name}} / {{Name}}") == "{{name}} / Sam"

    def test_non_identifier_placeholders_are_untouched(self):
        env = VariableEnvironment({"a": "1"})
        assert env.interpolate("{{ a }} {{a-b}} {a}") == "{{ a }} {{a-b}} {a}"

    def test_empty_template(self):
        env = VariableEnvironment({"a": "1"})
        assert env.interpolate("") == ""
        assert env.interpolate(None) == ""

    def test_interpolation_is_idempotent(self):
        env = VariableEnvironment({"first": "Sam", "city": "Pune"})
        template = "{{first}} from {{city}} ordered {{item}}"
        once = env.interpolate(template)
        assert env.interpolate(once) == once

    def test_as_dict_is_a_copy(self):
        env = VariableEnvironment({"a": "1"})
        snapshot = env.as_dict()
        snapshot["a"] = "2"
        assert env.get("a") == "1"
        assert "a" in env
