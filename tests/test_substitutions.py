"""Tests for the substitution chain and literal handling."""

import pytest

from spikegen.codegen.substitutions import (
    FunctionTemplate,
    Substitutions,
    UnresolvedNameError,
    check_unreplaced_variables,
    ensure_ftype,
    format_literal,
)


class TestBinding:
    def test_child_shadows_parent(self):
        parent = Substitutions()
        parent.add_var_substitution("id", "id")
        child = Substitutions(parent)
        child.add_var_substitution("id", "lid")
        assert child["id"] == "lid"
        assert parent["id"] == "id"

    def test_has_var_searches_the_chain(self):
        parent = Substitutions()
        parent.add_var_substitution("t", "t")
        child = Substitutions(parent)
        assert child.has_var_substitution("t")
        assert not child.has_var_substitution("id")

    def test_rebinding_at_same_level_fails(self):
        subs = Substitutions()
        subs.add_var_substitution("V", "lV")
        with pytest.raises(ValueError, match="already"):
            subs.add_var_substitution("V", "group->V[id]")

    def test_rebinding_with_override(self):
        subs = Substitutions()
        subs.add_var_substitution("V", "lV")
        subs.add_var_substitution("V", "lV2", allow_override=True)
        assert subs["V"] == "lV2"

    def test_unresolved_lookup_names_context(self):
        subs = Substitutions(context="updateNeuronsKernel")
        with pytest.raises(UnresolvedNameError) as excinfo:
            subs["missing"]
        assert excinfo.value.name == "missing"
        assert "updateNeuronsKernel" in str(excinfo.value)

    def test_precision_and_context_inherited(self):
        parent = Substitutions(precision="double", context="init")
        child = Substitutions(parent)
        assert child.precision == "double"
        assert child.context == "init"
        assert child.parent is parent

    def test_var_name_substitution(self):
        subs = Substitutions()
        subs.add_var_name_substitution(["V", "U"], dest_prefix="l", source_suffix="_pre")
        assert subs.apply("$(V_pre) + $(U_pre)") == "lV + lU"

    def test_param_values_literal_or_field(self):
        subs = Substitutions()
        subs.add_param_value_substitution({"a": 0.02, "c": -65.0},
                                          heterogeneous={"a": "group->a"})
        assert subs.apply("$(a) * $(c)") == "group->a * (-65.0)"


class TestApply:
    def test_vars_applied_child_first(self):
        root = Substitutions()
        root.add_var_substitution("id", "id")
        child = Substitutions(root)
        child.add_var_substitution("V", "group->V[$(id)]")
        assert child.apply("$(V) += 1;") == "group->V[id] += 1;"

    def test_function_with_arguments(self):
        subs = Substitutions(functions=[FunctionTemplate("addToInSyn", 1,
                                                         "atomicAdd(&inSyn[ipost], $(0))")])
        subs.add_var_substitution("g", "g[syn]")
        assert subs.apply("$(addToInSyn, $(g) * 2.0);") == "atomicAdd(&inSyn[ipost], g[syn] * 2.0);"

    def test_nested_parentheses_in_arguments(self):
        subs = Substitutions()
        subs.add_func_substitution("f", 2, "F($(0); $(1))")
        assert subs.apply("$(f, max(a, b), (c))") == "F(max(a, b); (c))"

    def test_zero_argument_function(self):
        subs = Substitutions()
        subs.add_func_substitution("endRow", 0, "break")
        assert subs.apply("$(endRow);") == "break;"

    def test_parent_function_template_sees_child_names(self):
        root = Substitutions(functions=[FunctionTemplate("gennrand_uniform", 0,
                                                         "curand_uniform($(rng))")])
        child = Substitutions(root)
        child.add_var_substitution("rng", "&group->rng[lid]")
        assert child.apply("$(gennrand_uniform)") == "curand_uniform(&group->rng[lid])"

    def test_wrong_argument_count(self):
        subs = Substitutions()
        subs.add_func_substitution("addToInSyn", 1, "x += $(0)")
        with pytest.raises(ValueError, match="expects 1"):
            subs.apply("$(addToInSyn, a, b)")

    def test_unterminated_call(self):
        subs = Substitutions()
        subs.add_func_substitution("addToInSyn", 1, "x += $(0)")
        with pytest.raises(ValueError, match="Unterminated"):
            subs.apply("$(addToInSyn, a")

    def test_unknown_names_are_left_in_place(self):
        assert Substitutions().apply("$(V) = 0;") == "$(V) = 0;"


class TestHelpers:
    def test_check_unreplaced(self):
        check_unreplaced_variables("lV += 1.0f;", "ctx")
        with pytest.raises(UnresolvedNameError) as excinfo:
            check_unreplaced_variables("lV += $(tau);", "Exc : simCode")
        assert excinfo.value.name == "tau"
        assert excinfo.value.context == "Exc : simCode"

    @pytest.mark.parametrize("value, text", [
        (0.2, "0.2"), (-65.0, "(-65.0)"), (3, "3.0"), (True, "true"), (1e-05, "1e-05"),
    ])
    def test_format_literal(self, value, text):
        assert format_literal(value) == text

    def test_ensure_ftype_float(self):
        code = "x = 0.5 * y + 1e-3 + .5 + 2;"
        assert ensure_ftype(code, "float") == "x = 0.5f * y + 1e-3f + .5f + 2;"

    def test_ensure_ftype_keeps_existing_suffix_and_identifiers(self):
        code = "x = 0.1f + v1.0 + 3.0f;"
        assert ensure_ftype(code, "float") == "x = 0.1f + v1.0 + 3.0f;"

    def test_ensure_ftype_double_strips_suffix(self):
        assert ensure_ftype("x = 0.5f * 2.0;", "double") == "x = 0.5 * 2.0;"
