#!/usr/bin/env python3
"""
bf_aot.py

Brainfuck -> LLVM IR (llvmlite) compiler front-end.

Contract:
- Symbols: + - < > . , [ ]   (every other character is a comment)
- Memory:
    - one tape of TAPE_SIZE i8 cells, zero-initialised
    - one i64 cursor ("position"), starts at 0
    - cell arithmetic wraps mod 256
    - the cursor is NOT bounds-checked: moving off either end of the tape and
      then touching a cell is undefined behaviour in the generated code.
- I/O (declared on first use, resolved by the linker / JIT):
    - '.'  ->  i32 putchar(i8)
    - ','  ->  i32 getchar(), stored as its low byte (EOF -1 becomes 255)
- Brackets:
    - '[' ... ']' is a while(cell != 0) loop
    - an unmatched '[' runs to the end of the input
    - an unmatched ']' closes the nearest open loop; at top level it is ignored

Output:
- LLVM IR module with:
    void main()

Usage:
  python bf_aot.py input.bf > out.ll
  python bf_aot.py input.bf --out-ll out.ll --opt 0
  python bf_aot.py input.bf --out-obj out.o --out-asm out.s
  python bf_aot.py input.bf --run < input.txt
"""

from __future__ import annotations

import argparse
import ctypes
import io
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TextIO, Tuple, Union
import shutil
import subprocess
import tempfile

import numpy as np

from llvmlite import ir
from llvmlite import binding as llvm


TAPE_SIZE = 0x4000


# -----------------------------
# AST
# -----------------------------

# leaf kind -> source symbol
SYMBOLS: Dict[str, str] = {
    "inc": "+",
    "dec": "-",
    "left": "<",
    "right": ">",
    "put": ".",
    "get": ",",
}
_KIND_BY_SYMBOL = {sym: kind for kind, sym in SYMBOLS.items()}


@dataclass
class Node:
    kind: str   # 'inc','dec','left','right','put','get','program','loop'
    children: List[Node] = field(default_factory=list)


def render(n: Node) -> str:
    """Minimal symbol sequence for n. Comments and unmatched ']' are gone, unmatched '[' gets closed."""
    out: List[str] = []
    pending: List[Union[Node, str]] = [n]
    while pending:
        item = pending.pop()
        if isinstance(item, str):
            out.append(item)
        elif item.kind in SYMBOLS:
            out.append(SYMBOLS[item.kind])
        elif item.kind == "program":
            pending.extend(reversed(item.children))
        elif item.kind == "loop":
            pending.append("]")
            pending.extend(reversed(item.children))
            out.append("[")
        else:
            raise TypeError(item.kind)
    return "".join(out)


def walk(n: Node) -> Iterator[Node]:
    """Pre-order, source order."""
    pending = [n]
    while pending:
        item = pending.pop()
        yield item
        pending.extend(reversed(item.children))


def loop_depth(n: Node) -> int:
    deepest = 0
    pending = [(n, 0)]
    while pending:
        item, depth = pending.pop()
        if item.kind == "loop":
            depth += 1
        deepest = max(deepest, depth)
        pending.extend((c, depth) for c in item.children)
    return deepest


# -----------------------------
# Parser
# -----------------------------

class Parser:
    def __init__(self, src: Union[str, TextIO]):
        self.stream = io.StringIO(src) if isinstance(src, str) else src
        self.eof = False

    def _read(self) -> str:
        c = self.stream.read(1)
        if not c:
            self.eof = True
        return c

    def parse_node(self) -> Optional[Node]:
        """
        Consume one logical unit from the stream.

        Returns None at ']' and at end of input; that is the "nothing more in
        this scope" signal. Callers that need to tell the two apart check
        self.eof.
        """
        while True:
            c = self._read()
            if not c:
                return None

            kind = _KIND_BY_SYMBOL.get(c)
            if kind is not None:
                return Node(kind)
            if c == "[":
                return self.parse_group()
            if c == "]":
                return None
            # anything else is a comment

    def _collect(self) -> List[Node]:
        items: List[Node] = []
        while True:
            n = self.parse_node()
            if n is None:
                return items
            items.append(n)

    def parse_group(self) -> Node:
        """
        Everything up to the matching ']' (or end of input); the '[' has
        already been consumed. Nested groups are tracked on an explicit stack
        so bracket depth is not bounded by the interpreter's recursion limit.
        """
        group = Node("loop")
        open_groups = [group]
        while open_groups:
            c = self._read()
            if not c:
                break

            kind = _KIND_BY_SYMBOL.get(c)
            if kind is not None:
                open_groups[-1].children.append(Node(kind))
            elif c == "[":
                inner = Node("loop")
                open_groups[-1].children.append(inner)
                open_groups.append(inner)
            elif c == "]":
                open_groups.pop()
        return group

    def parse_program(self) -> Node:
        items: List[Node] = []
        # a stray top-level ']' only ends one _collect() round
        while not self.eof:
            items.extend(self._collect())
        return Node("program", items)


def parse(src: Union[str, TextIO]) -> Node:
    return Parser(src).parse_program()


# -----------------------------
# LLVM IR emission (llvmlite)
# -----------------------------

class LLVMModuleEmitter:
    def __init__(self, tape_size: int = TAPE_SIZE):
        self.tape_size = tape_size

        self.i1 = ir.IntType(1)
        self.i8 = ir.IntType(8)
        self.i32 = ir.IntType(32)
        self.i64 = ir.IntType(64)
        self.tape_ty = ir.ArrayType(self.i8, tape_size)

        self.module = ir.Module(name="bf_module")

        # Insertion point and the two state slots, set up by emit_program().
        self.builder: Optional[ir.IRBuilder] = None
        self.position: Optional[ir.Value] = None
        self.tape: Optional[ir.Value] = None

        self._runtime: Dict[str, ir.Function] = {}
        self._next_group = 0

    def _const_i8(self, v: int) -> ir.Constant:
        return ir.Constant(self.i8, int(v))

    def _const_i64(self, v: int) -> ir.Constant:
        return ir.Constant(self.i64, int(v))

    def _declare_runtime(self, fn: str) -> ir.Function:
        if fn in self._runtime:
            return self._runtime[fn]

        if fn == "putchar":
            fnty = ir.FunctionType(self.i32, [self.i8])
        elif fn == "getchar":
            fnty = ir.FunctionType(self.i32, [])
        else:
            raise ValueError(f"Unknown runtime function {fn}")

        f = ir.Function(self.module, fnty, name=fn)
        self._runtime[fn] = f
        return f

    @property
    def runtime_functions(self) -> List[str]:
        return sorted(self._runtime)

    def _int_cast(self, v: ir.Value, ty: ir.IntType, signed: bool) -> ir.Value:
        width = v.type.width
        if width > ty.width:
            return self.builder.trunc(v, ty)
        if width < ty.width:
            return self.builder.sext(v, ty) if signed else self.builder.zext(v, ty)
        return v

    def _cell_ptr(self) -> ir.Value:
        # &tape[position], recomputed on every access
        pos = self.builder.load(self.position, name="position")
        return self.builder.gep(self.tape, [self._const_i64(0), pos], name="cell_ptr")

    def _load_cell(self) -> ir.Value:
        return self.builder.load(self._cell_ptr(), name="cell")

    def _cell_nonzero(self) -> ir.Value:
        return self.builder.icmp_unsigned("!=", self._load_cell(), self._const_i8(0), name="cell_nonzero")

    def emit(self, n: Node) -> None:
        if n.kind == "program":
            self.emit_program(n); return
        if self.builder is None:
            raise ValueError(f"{n.kind!r} node emitted outside of a program")

        # Loops push their children followed by a close marker, so nesting
        # depth costs list entries rather than Python stack frames.
        pending: List[Union[Node, Tuple[ir.Block, ir.Block]]] = [n]
        while pending:
            item = pending.pop()
            if isinstance(item, tuple):
                self._close_group(*item)
            elif item.kind == "loop":
                pending.append(self._open_group())
                pending.extend(reversed(item.children))
            else:
                self._emit_leaf(item)

    def _emit_leaf(self, n: Node) -> None:
        if n.kind in ("inc", "dec"):
            self._emit_cell_step(n.kind == "inc"); return
        if n.kind in ("left", "right"):
            self._emit_move(n.kind == "right"); return
        if n.kind == "put":
            self._emit_put(); return
        if n.kind == "get":
            self._emit_get(); return

        raise TypeError(n.kind)

    def _emit_cell_step(self, up: bool) -> None:
        b = self.builder
        ptr = self._cell_ptr()
        cur = b.load(ptr, name="cell")
        one = self._const_i8(1)
        # i8 add/sub wrap mod 256
        nxt = b.add(cur, one, name="cell_next") if up else b.sub(cur, one, name="cell_next")
        b.store(nxt, ptr)

    def _emit_move(self, right: bool) -> None:
        b = self.builder
        cur = b.load(self.position, name="position")
        one = self._const_i64(1)
        nxt = b.add(cur, one, name="position_next") if right else b.sub(cur, one, name="position_next")
        b.store(nxt, self.position)

    def _emit_put(self) -> None:
        putchar = self._declare_runtime("putchar")
        self.builder.call(putchar, [self._load_cell()], name="putchar_ret")

    def _emit_get(self) -> None:
        getchar = self._declare_runtime("getchar")
        c = self.builder.call(getchar, [], name="getchar_ret")
        byte = self._int_cast(c, self.i8, signed=True)
        self.builder.store(byte, self._cell_ptr())

    def emit_program(self, n: Node) -> ir.Function:
        fn = ir.Function(self.module, ir.FunctionType(ir.VoidType(), []), name="main")
        entry = fn.append_basic_block("entry")
        self.builder = b = ir.IRBuilder(entry)

        self.position = b.alloca(self.i64, name="position")
        b.store(self._const_i64(0), self.position)

        self.tape = b.alloca(self.tape_ty, name="tape")
        memset = self.module.declare_intrinsic("llvm.memset", [self.i8.as_pointer(), self.i64])
        raw = b.bitcast(self.tape, self.i8.as_pointer(), name="tape_bytes")
        b.call(memset, [raw, self._const_i8(0), self._const_i64(self.tape_size), ir.Constant(self.i1, 0)])

        for child in n.children:
            self.emit(child)

        b.ret_void()
        return fn

    def emit_group(self, n: Node) -> None:
        """
        while (cell != 0) { body }, as

            <current>:         cbranch cell != 0, group_content_N, merge_N
            group_content_N:   body...
                               cbranch cell != 0, group_content_N, merge_N
            merge_N:           (builder left here)

        The entry test runs once per activation, the exit test once per
        iteration.
        """
        self.emit(n)

    def _open_group(self) -> Tuple[ir.Block, ir.Block]:
        b = self.builder
        fn = b.function
        gid = self._next_group
        self._next_group += 1

        start = self._cell_nonzero()
        body_bb = fn.append_basic_block(f"group_content_{gid}")
        merge_bb = fn.append_basic_block(f"merge_{gid}")
        b.cbranch(start, body_bb, merge_bb)

        b.position_at_end(body_bb)
        return body_bb, merge_bb

    def _close_group(self, body_bb: ir.Block, merge_bb: ir.Block) -> None:
        # re-read: the body may have changed the cell or moved the cursor
        end = self._cell_nonzero()
        self.builder.cbranch(end, body_bb, merge_bb)
        self.builder.position_at_end(merge_bb)


def emit_module(root: Node, tape_size: int = TAPE_SIZE) -> Tuple[ir.Module, Dict[str, Any]]:
    emitter = LLVMModuleEmitter(tape_size=tape_size)
    emitter.emit(root)

    kinds = [n.kind for n in walk(root)]
    meta = {
        "nodes": len(kinds) - 1,   # root excluded
        "loops": kinds.count("loop"),
        "max_depth": loop_depth(root),
        "tape_size": emitter.tape_size,
        "runtime": emitter.runtime_functions,
    }
    return emitter.module, meta


def compile_bf_to_ir(src: Union[str, TextIO]) -> Tuple[ir.Module, Dict[str, Any]]:
    return emit_module(parse(src))


# -----------------------------
# Verification / optimisation / AOT
# -----------------------------

def _init_native() -> None:
    llvm.initialize_native_target()
    llvm.initialize_native_asmprinter()


def verify_module(mod_ir: ir.Module) -> llvm.ModuleRef:
    """Re-parse the printed IR and run the LLVM verifier. Raises RuntimeError on failure."""
    llvm_mod = llvm.parse_assembly(str(mod_ir))
    llvm_mod.verify()
    return llvm_mod


def optimize_module(llvm_mod: llvm.ModuleRef, tm: llvm.TargetMachine, opt_level: int) -> None:
    if opt_level <= 0:
        return
    # New pass manager default pipeline (roughly -O{opt_level})
    pto = llvm.PipelineTuningOptions(speed_level=int(opt_level))
    pb = llvm.create_pass_builder(tm, pto)
    pm = pb.getModulePassManager()
    pm.run(llvm_mod, pb)


def _aot_opt_and_emit(mod_ir: ir.Module,
                     opt_level: int,
                     emit_obj: Optional[str],
                     emit_asm: Optional[str],
                     target_triple: Optional[str] = None) -> str:
    """Return optimized LLVM IR text. Optionally emits object and/or assembly."""
    _init_native()

    triple = target_triple or llvm.get_default_triple()
    target = llvm.Target.from_triple(triple)
    tm = target.create_target_machine(opt=opt_level)

    # Configure IR module for this target
    mod_ir.triple = triple
    mod_ir.data_layout = str(tm.target_data)

    llvm_mod = verify_module(mod_ir)
    optimize_module(llvm_mod, tm, opt_level)

    # Cross objects for COFF/Mach-O go through clang; tm.emit_object() output
    # is not reliably linkable there.
    if emit_obj:
        if target_triple and (("windows" in target_triple.lower()) or ("apple" in target_triple.lower())):
            clang = shutil.which("clang")
            if not clang:
                raise RuntimeError("clang not found on PATH; needed to emit objects for " + target_triple)

            with tempfile.TemporaryDirectory() as td:
                ll_path = Path(td) / "aot.ll"
                ll_path.write_text(str(llvm_mod), encoding="utf-8")
                subprocess.check_call([
                    clang,
                    f"--target={target_triple}",
                    "-c",
                    str(ll_path),
                    "-o",
                    str(Path(emit_obj)),
                ])
        else:
            Path(emit_obj).write_bytes(tm.emit_object(llvm_mod))

    if emit_asm:
        Path(emit_asm).write_text(tm.emit_assembly(llvm_mod), encoding="utf-8")

    return str(llvm_mod)


# -----------------------------
# In-process execution (MCJIT)
# -----------------------------

_PUTCHAR_FN = ctypes.CFUNCTYPE(ctypes.c_int32, ctypes.c_uint8)
_GETCHAR_FN = ctypes.CFUNCTYPE(ctypes.c_int32)
_MAIN_FN = ctypes.CFUNCTYPE(None)


def run_jit(mod_ir: ir.Module, stdin: bytes = b"", opt_level: int = 0) -> bytes:
    """
    JIT-compile mod_ir and call main().

    putchar/getchar are bound to Python callbacks: output bytes are collected
    and returned, input is served from stdin, and getchar() returns -1 once
    it is exhausted. Symbol binding is process-global, so this is not
    re-entrant.
    """
    _init_native()
    opt_level = max(0, min(3, int(opt_level)))

    target = llvm.Target.from_default_triple()
    tm = target.create_target_machine(opt=opt_level)

    mod_ir.triple = llvm.get_default_triple()
    mod_ir.data_layout = str(tm.target_data)

    llvm_mod = verify_module(mod_ir)
    optimize_module(llvm_mod, tm, opt_level)

    out = bytearray()
    pending = iter(stdin)

    def _putchar(c: int) -> int:
        out.append(c)
        return c

    def _getchar() -> int:
        return next(pending, -1)

    # the thunks must stay referenced until main() returns
    put_cb = _PUTCHAR_FN(_putchar)
    get_cb = _GETCHAR_FN(_getchar)
    llvm.add_symbol("putchar", ctypes.cast(put_cb, ctypes.c_void_p).value)
    llvm.add_symbol("getchar", ctypes.cast(get_cb, ctypes.c_void_p).value)

    engine = llvm.create_mcjit_compiler(llvm_mod, tm)
    engine.finalize_object()
    engine.run_static_constructors()

    entry = _MAIN_FN(engine.get_function_address("main"))
    entry()
    return bytes(out)


# -----------------------------
# Reference interpreter
# -----------------------------

def _flatten(root: Node) -> List[Tuple[str, int]]:
    """
    Linear code for root: ("open", i) / ("close", j) pairs jump to each
    other's index, everything else carries -1.
    """
    code: List[Tuple[str, int]] = []
    pending: List[Union[Node, int]] = [root]
    while pending:
        item = pending.pop()
        if isinstance(item, int):
            # end of the loop whose "open" sits at index item
            code[item] = ("open", len(code))
            code.append(("close", item))
        elif item.kind == "program":
            pending.extend(reversed(item.children))
        elif item.kind == "loop":
            pending.append(len(code))
            code.append(("open", -1))
            pending.extend(reversed(item.children))
        elif item.kind in SYMBOLS:
            code.append((item.kind, -1))
        else:
            raise TypeError(item.kind)
    return code


class TapeMachine:
    """
    Interpreter over the same AST, used as the oracle for the compiled code.
    Loops are flattened into jumps first, with the same entry test / exit
    test shape the emitter produces. Unlike the compiled code it raises
    IndexError when the cursor leaves the tape.
    """

    def __init__(self, stdin: bytes = b"", tape_size: int = TAPE_SIZE):
        self.tape = np.zeros(tape_size, dtype=np.uint8)
        self.pos = 0
        self.out = bytearray()
        self.body_runs = 0   # loop body executions, all loops together
        self._pending = iter(stdin)

    def _cell(self) -> np.ndarray:
        if not 0 <= self.pos < self.tape.shape[0]:
            raise IndexError(f"cursor {self.pos} outside tape of {self.tape.shape[0]} cells")
        # 1-element view: in-place uint8 arithmetic wraps silently
        return self.tape[self.pos:self.pos + 1]

    def run(self, n: Node) -> None:
        code = _flatten(n)
        pc = 0
        while pc < len(code):
            k, target = code[pc]
            pc += 1
            if k == "inc":
                cell = self._cell()
                cell += 1
            elif k == "dec":
                cell = self._cell()
                cell -= 1
            elif k == "left":
                self.pos -= 1
            elif k == "right":
                self.pos += 1
            elif k == "put":
                self.out.append(int(self._cell()[0]))
            elif k == "get":
                self._cell()[0] = next(self._pending, -1) & 0xFF
            elif k == "open":
                if self._cell()[0] == 0:
                    pc = target + 1
                else:
                    self.body_runs += 1
            elif k == "close":
                if self._cell()[0] != 0:
                    self.body_runs += 1
                    pc = target + 1


def interpret(root: Node, stdin: bytes = b"", tape_size: int = TAPE_SIZE) -> bytes:
    m = TapeMachine(stdin, tape_size=tape_size)
    m.run(root)
    return bytes(m.out)


# -----------------------------
# CLI
# -----------------------------

def die(msg: str, code: int = 1) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)
    raise SystemExit(code)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Brainfuck -> LLVM IR + AOT object / in-process JIT")
    ap.add_argument("input", help="Path to .bf file")
    ap.add_argument("--out-ll", default="", help="Write LLVM IR (.ll) to this path (default: stdout)")
    ap.add_argument("--out-obj", default="", help="Emit AOT object file (.o/.obj) to this path")
    ap.add_argument("--out-asm", default="", help="Emit AOT assembly (.s) to this path")
    ap.add_argument("--meta", default="", help="Optional JSON metadata output")
    ap.add_argument("--opt", type=int, default=2, help="Optimization level (0-3). Default 2.")
    ap.add_argument("--target", default="", help="LLVM target triple for AOT object/asm (e.g. x86_64-pc-windows-msvc)")
    ap.add_argument("--dump-ast", action="store_true", help="Print the parsed program, minus comments, to stderr")
    ap.add_argument("--run", action="store_true", help="JIT-run the program; stdin is read fully before it starts")
    ap.add_argument("-v", "--verbose", action="store_true", help="Stage progress on stderr")
    args = ap.parse_args(argv)

    def note(stage: str, msg: str) -> None:
        if args.verbose:
            print(f"[{stage}] {msg}", file=sys.stderr)

    src_path = Path(args.input)
    try:
        txt = src_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        die(f"cannot read {src_path}: {e}", 2)

    root = parse(txt)
    note("parse", f"{sum(1 for _ in walk(root)) - 1} nodes, loop depth {loop_depth(root)}")
    if args.dump_ast:
        print(render(root), file=sys.stderr)

    mod, meta = emit_module(root)
    note("emit", f"runtime functions: {', '.join(meta['runtime']) or '-'}")

    opt_level = max(0, min(3, int(args.opt)))

    try:
        if args.run:
            note("jit", f"opt={opt_level}")
            sys.stdout.buffer.write(run_jit(mod, sys.stdin.buffer.read(), opt_level=opt_level))
            sys.stdout.flush()
            return 0

        note("opt", f"level {opt_level}")
        ir_text = _aot_opt_and_emit(
            mod_ir=mod,
            opt_level=opt_level,
            emit_obj=args.out_obj or None,
            emit_asm=args.out_asm or None,
            target_triple=(args.target or None),
        )
    except RuntimeError as e:
        die(f"generated IR failed verification or emission: {e}", 3)

    if args.out_ll:
        Path(args.out_ll).write_text(ir_text, encoding="utf-8")
    else:
        print(ir_text)

    if args.meta:
        Path(args.meta).write_text(json.dumps(meta, indent=2), encoding="utf-8")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
