"""Tests for LLVM IR emission."""

import pytest
from llvmlite import ir

from bf_aot import LLVMModuleEmitter, Node, TAPE_SIZE, emit_module, parse, verify_module


def _main(src):
    mod, _ = emit_module(parse(src))
    return mod, mod.get_global("main")


def _opnames(block):
    return [i.opname for i in block.instructions]


def _node_ops(src):
    """Opnames a single straight-line snippet adds to the entry block."""
    _, base = _main("")
    _, fn = _main(src)
    prologue = len(base.blocks[0].instructions) - 1   # everything but ret
    return _opnames(fn.blocks[0])[prologue:-1]


class TestProgramShape:
    def test_empty_program_allocates_and_returns(self):
        mod, fn = _main("")
        assert [b.name for b in fn.blocks] == ["entry"]
        ops = _opnames(fn.blocks[0])
        assert ops.count("alloca") == 2
        assert ops[-1] == "ret void"
        assert "putchar" not in mod.globals
        assert "getchar" not in mod.globals

    def test_state_slots(self):
        _, fn = _main("")
        allocas = [i for i in fn.blocks[0].instructions if i.opname == "alloca"]
        assert [a.name for a in allocas] == ["position", "tape"]

    def test_tape_type(self):
        emitter = LLVMModuleEmitter()
        assert emitter.tape_ty.count == TAPE_SIZE
        assert emitter.tape_ty.element == ir.IntType(8)

    def test_main_takes_nothing_and_returns_void(self):
        _, fn = _main("+")
        assert isinstance(fn.function_type.return_type, ir.VoidType)
        assert tuple(fn.function_type.args) == ()

    def test_noise_program_verifies(self):
        mod, _ = emit_module(parse("just a comment"))
        verify_module(mod)


class TestLeafLowering:
    def test_increment(self):
        assert _node_ops("+") == ["load", "getelementptr", "load", "add", "store"]

    def test_decrement(self):
        assert _node_ops("-") == ["load", "getelementptr", "load", "sub", "store"]

    def test_move_right(self):
        assert _node_ops(">") == ["load", "add", "store"]

    def test_move_left(self):
        assert _node_ops("<") == ["load", "sub", "store"]

    def test_put(self):
        assert _node_ops(".") == ["load", "getelementptr", "load", "call"]

    def test_get(self):
        assert _node_ops(",") == ["call", "trunc", "load", "getelementptr", "store"]

    def test_cell_arithmetic_is_8_bit(self):
        _, fn = _main("+")
        add = [i for i in fn.blocks[0].instructions if i.opname == "add"][0]
        assert add.type == ir.IntType(8)
        assert add.operands[1].constant == 1

    def test_cursor_arithmetic_is_64_bit(self):
        _, fn = _main("<")
        sub = [i for i in fn.blocks[0].instructions if i.opname == "sub"][0]
        assert sub.type == ir.IntType(64)

    def test_cell_address_recomputed_per_access(self):
        ops = _node_ops("++")
        assert ops.count("getelementptr") == 2


class TestRuntimeDeclarations:
    def test_putchar_declared_once(self):
        mod, _ = emit_module(parse("..[.]."))
        putchar = mod.get_global("putchar")
        assert putchar.is_declaration
        assert putchar.function_type.return_type == ir.IntType(32)
        assert tuple(putchar.function_type.args) == (ir.IntType(8),)
        assert sum(1 for g in mod.global_values if g.name == "putchar") == 1

    def test_getchar_signature(self):
        mod, _ = emit_module(parse(",,"))
        getchar = mod.get_global("getchar")
        assert getchar.is_declaration
        assert getchar.function_type.return_type == ir.IntType(32)
        assert tuple(getchar.function_type.args) == ()

    def test_unused_primitives_not_declared(self):
        _, meta = emit_module(parse("+-<>[-]"))
        assert meta["runtime"] == []

    def test_meta(self):
        _, meta = emit_module(parse(",[.,]"))
        assert meta == {
            "nodes": 4,
            "loops": 1,
            "max_depth": 1,
            "tape_size": TAPE_SIZE,
            "runtime": ["getchar", "putchar"],
        }


class TestLoopLowering:
    def test_single_loop_blocks(self):
        _, fn = _main("+[-]")
        assert [b.name for b in fn.blocks] == ["entry", "group_content_0", "merge_0"]

    def test_entry_and_exit_tests_target_body_and_merge(self):
        _, fn = _main("+[-]")
        entry, body, merge = fn.blocks
        for blk in (entry, body):
            br = blk.instructions[-1]
            assert br.opname == "br"
            assert br.operands[1] is body
            assert br.operands[2] is merge

    def test_exit_test_rereads_cell(self):
        _, fn = _main("[-]")
        body = fn.blocks[1]
        assert _opnames(body)[-5:] == ["load", "getelementptr", "load", "icmp", "br"]

    def test_code_after_loop_lands_in_merge(self):
        _, fn = _main("[-]+")
        merge = fn.blocks[2]
        assert "add" in _opnames(merge)
        assert _opnames(merge)[-1] == "ret void"

    def test_nested_loops(self):
        _, fn = _main("[[-]]")
        names = [b.name for b in fn.blocks]
        assert names == ["entry", "group_content_0", "merge_0", "group_content_1", "merge_1"]

        blocks = {b.name: b for b in fn.blocks}
        # outer exit test is emitted after the inner loop, i.e. in merge_1
        outer_exit = blocks["merge_1"].instructions[-1]
        assert outer_exit.operands[1] is blocks["group_content_0"]
        assert outer_exit.operands[2] is blocks["merge_0"]

        inner_exit = blocks["group_content_1"].instructions[-1]
        assert inner_exit.operands[1] is blocks["group_content_1"]
        assert inner_exit.operands[2] is blocks["merge_1"]

    @pytest.mark.parametrize("src", ["[]", "[[-]]", "[-][+]", "+[>[<-]+]", ",[.,]", "+[->+"])
    def test_loop_programs_verify(self, src):
        mod, _ = emit_module(parse(src))
        verify_module(mod)


class TestDeterminism:
    def test_two_emissions_are_identical(self):
        root = parse("++[>+[-]<-]>.,[.,]")
        a, _ = emit_module(root)
        b, _ = emit_module(root)
        assert str(a) == str(b)

    def test_emission_leaves_ast_untouched(self):
        root = parse("+[-.]")
        before = repr(root)
        emit_module(root)
        assert repr(root) == before


class TestErrors:
    def test_unterminated_block_fails_verification(self):
        mod = ir.Module(name="broken")
        fn = ir.Function(mod, ir.FunctionType(ir.VoidType(), []), name="main")
        fn.append_basic_block("entry")
        with pytest.raises(RuntimeError):
            verify_module(mod)

    def test_leaf_outside_program(self):
        with pytest.raises(ValueError):
            LLVMModuleEmitter().emit(Node("inc"))

    def test_unknown_kind(self):
        with pytest.raises(TypeError):
            LLVMModuleEmitter().emit(Node("program", [Node("nop")]))


class TestDeepNesting:
    def test_deep_loops_emit_and_verify(self):
        depth = 1000
        mod, meta = emit_module(parse("+" + "[" * depth + "-" + "]" * depth + "."))
        assert meta["max_depth"] == depth
        assert meta["loops"] == depth
        fn = mod.get_global("main")
        assert len(fn.blocks) == 1 + 2 * depth
        verify_module(mod)
