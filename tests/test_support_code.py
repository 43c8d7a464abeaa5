"""Tests for support code deduplication and the code stream."""

import pytest

from spikegen.backends import create_backend
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.generate_all import SUPPORT_CODE_HEADER, generate_all
from spikegen.codegen.support_code import SupportCodeError, SupportCodeMerged
from spikegen.model.spec import ModelSpec, VarInit

HELPER = "SUPPORT_CODE_FUNC scalar twice(scalar x) { return 2.0 * x; }"
OTHER = "SUPPORT_CODE_FUNC scalar half(scalar x) { return 0.5 * x; }"


class TestSupportCodeMerged:
    """Each distinct fragment gets one namespace, numbered by first encounter."""

    def test_duplicates_share_a_namespace(self):
        merged = SupportCodeMerged("NeuronUpdateSupportCode")
        merged.add_support_code(HELPER)
        merged.add_support_code(OTHER)
        merged.add_support_code(HELPER)
        assert len(merged) == 2
        assert merged.get_support_code_namespace(HELPER) == "NeuronUpdateSupportCode0"
        assert merged.get_support_code_namespace(OTHER) == "NeuronUpdateSupportCode1"

    def test_empty_code_is_ignored(self):
        merged = SupportCodeMerged("SynapseDynamicsSupportCode")
        merged.add_support_code("")
        assert len(merged) == 0
        assert "" not in merged

    def test_unknown_fragment_raises(self):
        merged = SupportCodeMerged("PresynapticUpdateSupportCode")
        with pytest.raises(SupportCodeError, match="PresynapticUpdateSupportCode"):
            merged.get_support_code_namespace(HELPER)

    def test_gen_wraps_each_fragment(self):
        merged = SupportCodeMerged("NeuronUpdateSupportCode")
        merged.add_support_code(HELPER)
        merged.add_support_code(OTHER)
        os = CodeStream()
        merged.gen(os, "float")
        text = os.getvalue()

        assert text.index("namespace NeuronUpdateSupportCode0") < text.index(
            "namespace NeuronUpdateSupportCode1")
        assert "}  // namespace NeuronUpdateSupportCode0" in text
        assert "return 2.0f * x;" in text

    def test_gen_double_precision_keeps_literals(self):
        merged = SupportCodeMerged("NeuronUpdateSupportCode")
        merged.add_support_code(OTHER)
        os = CodeStream()
        merged.gen(os, "double")
        assert "return 0.5 * x;" in os.getvalue()

    def test_fragment_from_three_populations_emitted_once(self, templates):
        model = ModelSpec("shared", precision="float", dt=0.1)
        for name, tau in (("A", 10.0), ("B", 20.0), ("C", 30.0)):
            model.add_neuron_population(name, 10, templates.lif, {"tau": tau},
                                        {"V": VarInit.constant(-60.0)})
        files, _ = generate_all(model, create_backend("cuda"))
        header = files[SUPPORT_CODE_HEADER]
        assert header.count("namespace NeuronUpdateSupportCode0\n{") == 1
        assert "NeuronUpdateSupportCode1" not in header
        assert header.count("clampV") == 1
        assert "using namespace NeuronUpdateSupportCode0;" in files["neuronUpdate.cu"]


class TestCodeStream:
    def test_block_indents_body(self):
        os = CodeStream()
        with os.block("if(id < 32)"):
            os.line("group->V[id] = 0;")
        assert os.getvalue() == "if(id < 32)\n{\n    group->V[id] = 0;\n}\n"

    def test_scope_trailer(self):
        os = CodeStream()
        with os.block("struct MergedNeuronUpdateGroup0", trailer=";"):
            os.line("unsigned int numNeurons;")
        assert os.getvalue().endswith("};\n")

    def test_multiline_text_is_indented_per_line(self):
        os = CodeStream()
        with os.scope():
            os.line("a = 1;\nb = 2;")
        assert "    a = 1;\n    b = 2;" in os.getvalue()

    def test_extend_reindents(self):
        inner = CodeStream()
        inner.line("x = 1;")
        outer = CodeStream()
        with outer.scope():
            outer.extend(inner)
        assert "    x = 1;" in outer.getvalue()

    def test_scope_closed_when_body_raises(self):
        os = CodeStream()
        with pytest.raises(RuntimeError):
            with os.scope():
                raise RuntimeError("handler failed")
        os.line("after;")
        assert os.getvalue() == "{\n}\nafter;\n"

    def test_comment_and_blank(self):
        os = CodeStream()
        os.comment("merged0")
        os.blank()
        assert str(os) == "// merged0\n\n"
        assert len(os) == 2

    def test_empty_stream(self):
        assert CodeStream().getvalue() == ""
