#!/usr/bin/env python3
# miniforth_vm_core.py
#
# Noyau de la machine à pile miniforth.
# - jeu d'instructions fermé (Op) + Instruction immuable
# - famille d'erreurs typées (MiniForthError)
# - VM : pile de données, pile de retour, ip, boucle d'exécution
#
# Tests intégrés :
#   python miniforth_vm_core.py --test

from __future__ import annotations

import io
import logging
import sys
import unittest
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

log = logging.getLogger(__name__)

I32_MIN = -(1 << 31)
I32_MAX = (1 << 31) - 1

DEFAULT_MAX_STEPS: Optional[int] = None


def wrap_i32(value: int) -> int:
    """Ramène un entier Python dans l'intervalle signé 32 bits (complément à deux)."""
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value > I32_MAX else value


# ============================================================
# Erreurs
# ============================================================

class ErrorKind(Enum):
    STACK_UNDERFLOW        = "STACK_UNDERFLOW"
    RETURN_STACK_UNDERFLOW = "RETURN_STACK_UNDERFLOW"
    UNKNOWN_WORD           = "UNKNOWN_WORD"
    INVALID_ADDRESS        = "INVALID_ADDRESS"
    STEP_LIMIT             = "STEP_LIMIT"
    DICTIONARY_LOCKED      = "DICTIONARY_LOCKED"
    MALFORMED_DEFINITION   = "MALFORMED_DEFINITION"
    INVALID_LITERAL        = "INVALID_LITERAL"
    PARSER_FINALIZED       = "PARSER_FINALIZED"


class MiniForthError(RuntimeError):
    kind: ErrorKind


class VMError(MiniForthError):
    """
    Failure raised by the execution loop.

    Carries the instruction pointer, the offending instruction and a copy of
    the evaluation stack as it was when the instruction started.
    """

    def __init__(self, message: str, *, ip: int = -1,
                 instruction: Optional["Instruction"] = None,
                 stack: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.ip = ip
        self.instruction = instruction
        self.stack: List[int] = list(stack)

    def __str__(self) -> str:
        msg = super().__str__()
        if self.instruction is None:
            return msg
        return f"{msg} (ip={self.ip}, {self.instruction})"


class StackUnderflow(VMError):         kind = ErrorKind.STACK_UNDERFLOW
class ReturnStackUnderflow(VMError):   kind = ErrorKind.RETURN_STACK_UNDERFLOW
class UnknownWord(VMError):            kind = ErrorKind.UNKNOWN_WORD
class InvalidAddress(VMError):         kind = ErrorKind.INVALID_ADDRESS
class StepLimitExceeded(VMError):      kind = ErrorKind.STEP_LIMIT
class DictionaryLocked(VMError):       kind = ErrorKind.DICTIONARY_LOCKED


class InvalidInstruction(ValueError): ...


# ============================================================
# Jeu d'instructions
# ============================================================

class Op(Enum):
    PUSH      = "PUSH"
    ADD       = "ADD"
    MUL       = "MUL"
    DUP       = "DUP"
    DROP      = "DROP"
    SWAP      = "SWAP"
    OVER      = "OVER"
    ROT       = "ROT"
    NIP       = "NIP"
    TUCK      = "TUCK"
    TWO_DUP   = "TWO_DUP"
    TWO_DROP  = "TWO_DROP"
    TWO_SWAP  = "TWO_SWAP"
    DEPTH     = "DEPTH"
    JUMP      = "JUMP"
    IF_ZERO   = "IF_ZERO"
    CALL      = "CALL"
    CALL_WORD = "CALL_WORD"
    RETURN    = "RETURN"
    HALT      = "HALT"


ZERO_OPERAND_OPS = frozenset({
    Op.ADD, Op.MUL, Op.DUP, Op.DROP, Op.SWAP, Op.OVER, Op.ROT, Op.NIP,
    Op.TUCK, Op.TWO_DUP, Op.TWO_DROP, Op.TWO_SWAP, Op.DEPTH, Op.RETURN, Op.HALT,
})

# ops that set ip themselves (no default increment)
CONTROL_OPS = frozenset({Op.JUMP, Op.IF_ZERO, Op.CALL, Op.CALL_WORD, Op.RETURN})

# minimum evaluation stack depth per op
STACK_NEEDS: Dict[Op, int] = {
    Op.ADD: 2, Op.MUL: 2, Op.DUP: 1, Op.DROP: 1, Op.SWAP: 2, Op.OVER: 2,
    Op.ROT: 3, Op.NIP: 2, Op.TUCK: 2, Op.TWO_DUP: 2, Op.TWO_DROP: 2,
    Op.TWO_SWAP: 4, Op.IF_ZERO: 1,
}


@dataclass(frozen=True)
class Instruction:
    op: Op
    arg: Any = None

    def __post_init__(self) -> None:
        op, arg = self.op, self.arg
        if not isinstance(op, Op):
            raise InvalidInstruction(f"not an opcode: {op!r}")
        if op in ZERO_OPERAND_OPS:
            if arg is not None:
                raise InvalidInstruction(f"{op.value} takes no operand, got {arg!r}")
        elif op is Op.PUSH:
            if not _is_int(arg) or not (I32_MIN <= arg <= I32_MAX):
                raise InvalidInstruction(f"PUSH expects a signed 32-bit int, got {arg!r}")
        elif op in (Op.JUMP, Op.IF_ZERO):
            if not _is_int(arg):
                raise InvalidInstruction(f"{op.value} expects an int offset, got {arg!r}")
            # IF_ZERO 0 dépile à chaque passage : il finit toujours
            if op is Op.JUMP and arg == 0:
                raise InvalidInstruction("JUMP 0 would branch onto itself")
        elif op is Op.CALL:
            if not _is_int(arg) or arg < 0:
                raise InvalidInstruction(f"CALL expects a non-negative address, got {arg!r}")
        elif op is Op.CALL_WORD:
            if not isinstance(arg, str) or not arg:
                raise InvalidInstruction(f"CALL_WORD expects a word name, got {arg!r}")

    def __str__(self) -> str:
        if self.arg is None:
            return self.op.value
        return f"{self.op.value} {self.arg}"

    @staticmethod
    def of(name: str, arg: Any = None) -> "Instruction":
        """Build from an opcode name: Instruction.of("PUSH", 3), Instruction.of("dup")."""
        try:
            op = Op[name.upper()]
        except KeyError:
            raise InvalidInstruction(f"unknown opcode: {name}") from None
        return Instruction(op, arg)


def _is_int(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


def _checked_words(entries: Mapping[str, int]) -> Dict[str, int]:
    words: Dict[str, int] = {}
    for name, addr in entries.items():
        if not isinstance(name, str) or not name:
            raise InvalidInstruction(f"word names are non-empty str, got {name!r}")
        if not _is_int(addr) or addr < 0:
            raise InvalidInstruction(f"word {name!r} needs a non-negative address, got {addr!r}")
        words[name] = addr
    return words


# constructors
def push(value: int) -> Instruction: return Instruction(Op.PUSH, value)
def jump(offset: int) -> Instruction: return Instruction(Op.JUMP, offset)
def if_zero(offset: int) -> Instruction: return Instruction(Op.IF_ZERO, offset)
def call(address: int) -> Instruction: return Instruction(Op.CALL, address)
def call_word(name: str) -> Instruction: return Instruction(Op.CALL_WORD, name)

ADD      = Instruction(Op.ADD)
MUL      = Instruction(Op.MUL)
DUP      = Instruction(Op.DUP)
DROP     = Instruction(Op.DROP)
SWAP     = Instruction(Op.SWAP)
OVER     = Instruction(Op.OVER)
ROT      = Instruction(Op.ROT)
NIP      = Instruction(Op.NIP)
TUCK     = Instruction(Op.TUCK)
TWO_DUP  = Instruction(Op.TWO_DUP)
TWO_DROP = Instruction(Op.TWO_DROP)
TWO_SWAP = Instruction(Op.TWO_SWAP)
DEPTH    = Instruction(Op.DEPTH)
RETURN   = Instruction(Op.RETURN)
HALT     = Instruction(Op.HALT)


def disassemble(program: Sequence[Instruction], dictionary: Optional[Mapping[str, int]] = None) -> str:
    """
    Listing numéroté d'un programme, avec les mots du dictionnaire en étiquette.

        0000  PUSH 5
        0001  CALL_WORD square
        0002  HALT
              square:
        0003  DUP
    """
    labels: Dict[int, List[str]] = {}
    for name, addr in (dictionary or {}).items():
        labels.setdefault(addr, []).append(name)
    lines: List[str] = []
    for addr, ins in enumerate(program):
        for name in sorted(labels.get(addr, [])):
            lines.append(f"      {name}:")
        lines.append(f"{addr:04d}  {ins}")
    return "\n".join(lines)


# ============================================================
# VM
# ============================================================

class VM:
    """
    Stack machine executing a flat, immutable instruction list.

    State: ``stack`` (evaluation stack), ``rstack`` (return addresses),
    ``ip`` (next instruction). ``run()`` executes until HALT or the end of
    the program; failures raise a ``VMError`` subclass and leave the VM
    state as it was when the failing instruction started.
    """

    def __init__(self, program: Iterable[Instruction],
                 dictionary: Optional[Mapping[str, int]] = None, *,
                 max_steps: Optional[int] = DEFAULT_MAX_STEPS,
                 trace: bool = False,
                 out: Optional[Any] = None,
                 initial_stack: Iterable[int] = ()) -> None:
        self.program: Tuple[Instruction, ...] = tuple(program)
        for i, ins in enumerate(self.program):
            if not isinstance(ins, Instruction):
                raise InvalidInstruction(f"program[{i}] is not an Instruction: {ins!r}")
        self.stack: List[int] = []
        for v in initial_stack:
            if not _is_int(v) or not (I32_MIN <= v <= I32_MAX):
                raise InvalidInstruction(f"stack cells are signed 32-bit ints, got {v!r}")
            self.stack.append(v)
        self.rstack: List[int] = []
        self.ip: int = 0
        self.steps: int = 0
        self.halted: bool = False
        self.max_steps = max_steps
        self.trace = trace
        # Sortie par défaut (trace) ; remplaçable par n'importe quel flux texte
        self.out = out if out is not None else io.StringIO()

        self._dictionary: Dict[str, int] = {}
        if dictionary:
            self._dictionary.update(_checked_words(dictionary))

        self._handlers: Dict[Op, Callable[[Instruction], None]] = {}
        self._install_handlers()

    # ----------------- dictionary -----------------

    @property
    def dictionary(self) -> Mapping[str, int]:
        return MappingProxyType(self._dictionary)

    def install_dictionary(self, entries: Mapping[str, int]) -> None:
        """Merge ``entries`` into the dictionary (later entries win). Only before execution starts."""
        if self.steps:
            raise DictionaryLocked("dictionary cannot change once execution has started",
                                   ip=self.ip, stack=self.stack)
        self._dictionary.update(_checked_words(entries))

    # ----------------- IO -----------------

    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        self.out.write(text)

    # ----------------- exécution -----------------

    def run(self) -> None:
        log.debug("run: ip=%d len=%d", self.ip, len(self.program))
        while self.step_one():
            pass
        log.debug("run finished: ip=%d steps=%d stack=%r", self.ip, self.steps, self.stack)

    def step_one(self) -> bool:
        """
        Execute exactly one instruction.
        Returns True if more work may remain, False once halted or past the end.
        """
        if self.halted or self.ip >= len(self.program):
            return False
        ins = self.program[self.ip]
        if self.max_steps is not None and self.steps >= self.max_steps:
            raise StepLimitExceeded(f"step limit of {self.max_steps} exceeded",
                                    ip=self.ip, instruction=ins, stack=self.stack)
        need = STACK_NEEDS.get(ins.op, 0)
        if len(self.stack) < need:
            raise StackUnderflow(f"stack underflow: {ins.op.value} needs {need}, have {len(self.stack)}",
                                 ip=self.ip, instruction=ins, stack=self.stack)
        if self.trace:
            self.emit(f"[{self.ip:04d}] {str(ins):<20} <{len(self.stack)}> "
                      + " ".join(map(str, self.stack)) + "\n")
        self.steps += 1
        self._handlers[ins.op](ins)
        if ins.op not in CONTROL_OPS and not self.halted:
            self.ip += 1
        return not self.halted and self.ip < len(self.program)

    def _transfer(self, target: int, ins: Instruction) -> None:
        # len(program) est une cible légale : fin du programme
        if not 0 <= target <= len(self.program):
            raise InvalidAddress(f"branch target {target} outside 0..{len(self.program)}",
                                 ip=self.ip, instruction=ins, stack=self.stack)
        self.ip = target

    def _install_handlers(self) -> None:
        S = self.stack
        H = self._handlers

        def op_push(ins):  S.append(ins.arg)
        def op_add(ins):
            b = S.pop(); a = S.pop()
            S.append(wrap_i32(a + b))
        def op_mul(ins):
            b = S.pop(); a = S.pop()
            S.append(wrap_i32(a * b))
        def op_dup(ins):   S.append(S[-1])
        def op_drop(ins):  S.pop()
        def op_swap(ins):  S[-1], S[-2] = S[-2], S[-1]
        def op_over(ins):  S.append(S[-2])
        # ( a b c -- b c a )
        def op_rot(ins):   S.append(S.pop(-3))
        # ( a b -- b )
        def op_nip(ins):   del S[-2]
        # ( a b -- b a b )
        def op_tuck(ins):  S.insert(-2, S[-1])
        def op_2dup(ins):  S.extend(S[-2:])
        def op_2drop(ins): del S[-2:]
        # ( a b c d -- c d a b )
        def op_2swap(ins): S[-4:] = S[-2:] + S[-4:-2]
        def op_depth(ins): S.append(len(S))

        def op_jump(ins):
            self._transfer(self.ip + ins.arg, ins)

        def op_if_zero(ins):
            if S[-1] != 0:
                S.pop()
                self.ip += 1
                return
            # _transfer lève avant le pop : la pile reste intacte en cas d'erreur
            self._transfer(self.ip + ins.arg, ins)
            S.pop()

        def op_call(ins):
            self._enter(ins.arg, ins)

        def op_call_word(ins):
            addr = self._dictionary.get(ins.arg)
            if addr is None:
                raise UnknownWord(f"unknown word: {ins.arg}",
                                  ip=self.ip, instruction=ins, stack=S)
            self._enter(addr, ins)

        def op_return(ins):
            if not self.rstack:
                raise ReturnStackUnderflow("RETURN with an empty return stack",
                                           ip=self.ip, instruction=ins, stack=S)
            self.ip = self.rstack.pop()

        def op_halt(ins):
            self.halted = True
            log.debug("HALT at ip=%d", self.ip)

        H[Op.PUSH] = op_push
        H[Op.ADD] = op_add
        H[Op.MUL] = op_mul
        H[Op.DUP] = op_dup
        H[Op.DROP] = op_drop
        H[Op.SWAP] = op_swap
        H[Op.OVER] = op_over
        H[Op.ROT] = op_rot
        H[Op.NIP] = op_nip
        H[Op.TUCK] = op_tuck
        H[Op.TWO_DUP] = op_2dup
        H[Op.TWO_DROP] = op_2drop
        H[Op.TWO_SWAP] = op_2swap
        H[Op.DEPTH] = op_depth
        H[Op.JUMP] = op_jump
        H[Op.IF_ZERO] = op_if_zero
        H[Op.CALL] = op_call
        H[Op.CALL_WORD] = op_call_word
        H[Op.RETURN] = op_return
        H[Op.HALT] = op_halt

        missing = [op.value for op in Op if op not in H]
        assert not missing, f"opcodes without handler: {missing}"

    def _enter(self, address: int, ins: Instruction) -> None:
        if not 0 <= address <= len(self.program):
            raise InvalidAddress(f"call target {address} outside 0..{len(self.program)}",
                                 ip=self.ip, instruction=ins, stack=self.stack)
        self.rstack.append(self.ip + 1)
        self.ip = address


####################################################################
# Tests
####################################################################

class TestInstruction(unittest.TestCase):
    def test_zero_operand_rejects_arg(self) -> None:
        with self.assertRaises(InvalidInstruction):
            Instruction(Op.DUP, 1)

    def test_push_range(self) -> None:
        self.assertEqual(push(I32_MAX).arg, I32_MAX)
        with self.assertRaises(InvalidInstruction):
            push(I32_MAX + 1)
        with self.assertRaises(InvalidInstruction):
            push(True)

    def test_jump_zero_rejected(self) -> None:
        with self.assertRaises(InvalidInstruction):
            jump(0)

    def test_if_zero_zero_repeats_until_non_zero(self) -> None:
        vm = VM([push(7), push(0), push(0), if_zero(0)])
        vm.run()
        self.assertEqual(vm.stack, [])
        self.assertEqual(vm.ip, 4)

    def test_if_zero_zero_underflows_on_all_zero_stack(self) -> None:
        vm = VM([push(0), if_zero(0)])
        with self.assertRaises(StackUnderflow):
            vm.run()
        self.assertEqual(vm.ip, 1)

    def test_call_needs_non_negative(self) -> None:
        with self.assertRaises(InvalidInstruction):
            call(-1)

    def test_of_and_str(self) -> None:
        self.assertEqual(Instruction.of("dup"), DUP)
        self.assertEqual(str(Instruction.of("PUSH", 5)), "PUSH 5")
        self.assertEqual(str(call_word("square")), "CALL_WORD square")
        with self.assertRaises(InvalidInstruction):
            Instruction.of("NOPE")

    def test_immutable(self) -> None:
        ins = push(1)
        with self.assertRaises(Exception):
            ins.arg = 2  # type: ignore[misc]

    def test_wrap_i32(self) -> None:
        self.assertEqual(wrap_i32(I32_MAX + 1), I32_MIN)
        self.assertEqual(wrap_i32(-5), -5)
        self.assertEqual(wrap_i32(1 << 32), 0)


class TestVMExamples(unittest.TestCase):
    def test_arith_program(self) -> None:
        vm = VM([push(2), push(3), ADD, push(4), MUL, HALT])
        vm.run()
        self.assertEqual(vm.stack, [20])

    def test_call_square(self) -> None:
        vm = VM([push(5), call(3), HALT, DUP, MUL, RETURN])
        vm.run()
        self.assertEqual(vm.stack, [25])
        self.assertEqual(vm.rstack, [])
        self.assertTrue(vm.halted)

    def test_call_word(self) -> None:
        vm = VM([push(6), call_word("sq"), HALT, DUP, MUL, RETURN], {"sq": 3})
        vm.run()
        self.assertEqual(vm.stack, [36])

    def test_runs_off_the_end(self) -> None:
        vm = VM([push(1), push(2)])
        vm.run()
        self.assertEqual(vm.stack, [1, 2])
        self.assertFalse(vm.halted)
        self.assertEqual(vm.ip, 2)

    def test_halt_does_not_advance(self) -> None:
        vm = VM([push(1), HALT, push(2)])
        vm.run()
        self.assertEqual(vm.stack, [1])
        self.assertEqual(vm.ip, 1)

    def test_empty_program(self) -> None:
        vm = VM([])
        vm.run()
        self.assertEqual(vm.stack, [])

    def test_initial_stack(self) -> None:
        vm = VM([ADD], initial_stack=[4, 5])
        vm.run()
        self.assertEqual(vm.stack, [9])
        with self.assertRaises(InvalidInstruction):
            VM([], initial_stack=[1 << 40])


class TestVMStackOps(unittest.TestCase):
    def run_ops(self, initial: List[int], *ops: Instruction) -> List[int]:
        vm = VM([push(v) for v in initial] + list(ops))
        vm.run()
        return vm.stack

    def test_shuffles(self) -> None:
        self.assertEqual(self.run_ops([1, 2], SWAP), [2, 1])
        self.assertEqual(self.run_ops([1, 2], OVER), [1, 2, 1])
        self.assertEqual(self.run_ops([1, 2, 3], ROT), [2, 3, 1])
        self.assertEqual(self.run_ops([1, 2], NIP), [2])
        self.assertEqual(self.run_ops([1, 2], TUCK), [2, 1, 2])
        self.assertEqual(self.run_ops([9, 1, 2], TUCK), [9, 2, 1, 2])
        self.assertEqual(self.run_ops([1, 2], TWO_DUP), [1, 2, 1, 2])
        self.assertEqual(self.run_ops([0, 1, 2], TWO_DROP), [0])
        self.assertEqual(self.run_ops([1, 2, 3, 4], TWO_SWAP), [3, 4, 1, 2])
        self.assertEqual(self.run_ops([7, 7, 7], DEPTH), [7, 7, 7, 3])
        self.assertEqual(self.run_ops([], DEPTH), [0])

    def test_add_mul_operand_order_and_wrap(self) -> None:
        self.assertEqual(self.run_ops([2, 3], ADD), [5])
        self.assertEqual(self.run_ops([-4, 3], MUL), [-12])
        self.assertEqual(self.run_ops([I32_MAX, 1], ADD), [I32_MIN])

    def test_push_drop_round_trip(self) -> None:
        for prior in ([], [1], [3, -2, 8]):
            self.assertEqual(self.run_ops(prior, push(42), DROP), prior)

    def test_dup_swap(self) -> None:
        self.assertEqual(self.run_ops([4, 9], DUP, SWAP), [4, 9, 9])

    def test_two_swap_involution(self) -> None:
        for initial in ([1, 2, 3, 4], [0, 5, 6, 7, 8]):
            self.assertEqual(self.run_ops(initial, TWO_SWAP, TWO_SWAP), initial)

    def test_reference_model(self) -> None:
        # simulation directe en Python vs VM
        model = {
            Op.ADD: lambda s: s[:-2] + [s[-2] + s[-1]],
            Op.MUL: lambda s: s[:-2] + [s[-2] * s[-1]],
            Op.DUP: lambda s: s + [s[-1]],
            Op.DROP: lambda s: s[:-1],
            Op.SWAP: lambda s: s[:-2] + [s[-1], s[-2]],
            Op.OVER: lambda s: s + [s[-2]],
            Op.ROT: lambda s: s[:-3] + [s[-2], s[-1], s[-3]],
            Op.NIP: lambda s: s[:-2] + [s[-1]],
            Op.TUCK: lambda s: s[:-2] + [s[-1], s[-2], s[-1]],
            Op.TWO_DUP: lambda s: s + s[-2:],
            Op.TWO_DROP: lambda s: s[:-2],
            Op.TWO_SWAP: lambda s: s[:-4] + s[-2:] + s[-4:-2],
            Op.DEPTH: lambda s: s + [len(s)],
        }
        program = [push(3), push(-1), push(4), push(1), ROT, TWO_DUP, ADD, OVER,
                   MUL, TUCK, NIP, DEPTH, TWO_SWAP, SWAP, DUP, DROP, TWO_DROP, MUL]
        expected: List[int] = []
        for ins in program:
            if ins.op is Op.PUSH:
                expected = expected + [ins.arg]
            else:
                expected = model[ins.op](expected)
        vm = VM(program)
        vm.run()
        self.assertEqual(vm.stack, expected)


class TestVMControlFlow(unittest.TestCase):
    def test_jump_forward_and_backward(self) -> None:
        # 0: PUSH 1 ; 1: JUMP +2 ; 2: PUSH 99 ; 3: PUSH 2
        vm = VM([push(1), jump(2), push(99), push(2)])
        vm.run()
        self.assertEqual(vm.stack, [1, 2])

    def test_countdown_loop(self) -> None:
        # n=3 : boucle DUP IF_ZERO fin ; -1 + ; JUMP arrière
        program = [
            push(3),        # 0
            DUP,            # 1
            if_zero(4),     # 2 -> 6
            push(-1),       # 3
            ADD,            # 4
            jump(-4),       # 5 -> 1
            HALT,           # 6
        ]
        vm = VM(program)
        vm.run()
        self.assertEqual(vm.stack, [0])

    def test_if_zero_not_taken(self) -> None:
        vm = VM([push(5), push(1), if_zero(2), push(7)])
        vm.run()
        self.assertEqual(vm.stack, [5, 7])

    def test_nested_calls(self) -> None:
        # 0..2 main ; 3 double: DUP ADD RETURN ; 6 quad: CALL 3 CALL 3 RETURN
        program = [push(3), call(6), HALT, DUP, ADD, RETURN, call(3), call(3), RETURN]
        vm = VM(program)
        vm.run()
        self.assertEqual(vm.stack, [12])

    def test_jump_out_of_bounds(self) -> None:
        vm = VM([push(1), jump(-5)])
        with self.assertRaises(InvalidAddress) as cm:
            vm.run()
        self.assertEqual(cm.exception.ip, 1)
        self.assertEqual(cm.exception.kind, ErrorKind.INVALID_ADDRESS)

    def test_if_zero_out_of_bounds_keeps_stack(self) -> None:
        vm = VM([push(0), if_zero(10)])
        with self.assertRaises(InvalidAddress):
            vm.run()
        self.assertEqual(vm.stack, [0])

    def test_jump_to_end_is_legal(self) -> None:
        vm = VM([push(1), jump(2), push(2)])
        vm.run()
        self.assertEqual(vm.stack, [1])

    def test_step_limit(self) -> None:
        vm = VM([push(1), jump(-1)], max_steps=50)
        with self.assertRaises(StepLimitExceeded):
            vm.run()
        self.assertEqual(vm.steps, 50)

    def test_step_one(self) -> None:
        vm = VM([push(1), push(2), ADD])
        self.assertTrue(vm.step_one())
        self.assertEqual(vm.stack, [1])
        self.assertTrue(vm.step_one())
        self.assertFalse(vm.step_one())
        self.assertFalse(vm.step_one())
        self.assertEqual(vm.stack, [3])

    def test_trace_output(self) -> None:
        out = io.StringIO()
        vm = VM([push(2), DUP], trace=True, out=out)
        vm.run()
        lines = out.getvalue().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertIn("PUSH 2", lines[0])
        self.assertIn("<1> 2", lines[1])


class TestVMErrors(unittest.TestCase):
    def test_underflow_per_op(self) -> None:
        for op, need in STACK_NEEDS.items():
            ins = if_zero(1) if op is Op.IF_ZERO else Instruction(op)
            initial = list(range(10, 10 + need - 1))
            vm = VM([push(v) for v in initial] + [ins])
            with self.assertRaises(StackUnderflow, msg=op.value) as cm:
                vm.run()
            self.assertEqual(vm.stack, initial, op.value)
            self.assertEqual(cm.exception.stack, initial)
            self.assertEqual(cm.exception.ip, len(initial))
            self.assertEqual(cm.exception.instruction, ins)

    def test_unknown_word(self) -> None:
        vm = VM([push(1), call_word("nope"), push(2)])
        with self.assertRaises(UnknownWord) as cm:
            vm.run()
        self.assertEqual(cm.exception.kind, ErrorKind.UNKNOWN_WORD)
        self.assertEqual(vm.ip, 1)
        self.assertEqual(vm.stack, [1])
        self.assertEqual(vm.rstack, [])

    def test_return_underflow(self) -> None:
        vm = VM([RETURN])
        with self.assertRaises(ReturnStackUnderflow):
            vm.run()

    def test_call_out_of_bounds(self) -> None:
        vm = VM([call(9)])
        with self.assertRaises(InvalidAddress):
            vm.run()
        self.assertEqual(vm.rstack, [])

    def test_dictionary_locked_after_start(self) -> None:
        vm = VM([push(1), call_word("w"), HALT, RETURN])
        vm.install_dictionary({"w": 3})
        vm.step_one()
        with self.assertRaises(DictionaryLocked):
            vm.install_dictionary({"w": 2})
        vm.run()
        self.assertEqual(vm.stack, [1])

    def test_dictionary_read_only(self) -> None:
        vm = VM([], {"a": 0})
        with self.assertRaises(TypeError):
            vm.dictionary["a"] = 1  # type: ignore[index]

    def test_dictionary_entries_validated(self) -> None:
        for bad in ("2", -1, True, None):
            with self.assertRaises(InvalidInstruction, msg=repr(bad)):
                VM([call_word("w"), HALT, RETURN], {"w": bad})
        vm = VM([call_word("w"), HALT, RETURN])
        with self.assertRaises(InvalidInstruction):
            vm.install_dictionary({"w": "2"})
        self.assertEqual(dict(vm.dictionary), {})
        vm.install_dictionary({"w": 2})
        vm.run()
        self.assertTrue(vm.halted)

    def test_program_must_hold_instructions(self) -> None:
        with self.assertRaises(InvalidInstruction):
            VM([push(1), "DUP"])  # type: ignore[list-item]


class TestDisassemble(unittest.TestCase):
    def test_listing_with_labels(self) -> None:
        text = disassemble([push(5), call_word("sq"), HALT, DUP, MUL, RETURN], {"sq": 3})
        lines = text.splitlines()
        self.assertEqual(lines[0], "0000  PUSH 5")
        self.assertEqual(lines[3].strip(), "sq:")
        self.assertEqual(lines[4], "0003  DUP")


def test_all() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
