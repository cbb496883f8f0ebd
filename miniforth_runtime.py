#!/usr/bin/env python3
# miniforth_runtime.py
#
# Couche d'intégration au-dessus de miniforth_vm_core / miniforth_assembler :
# - RunResult : résultat typé (succès ou erreur + pile + sortie)
# - run_program / run_source : exécution en une fois
# - Session : contexte interactif (mots et pile conservés entre les lignes)
#
# Tests intégrés :
#   python miniforth_runtime.py --test

from __future__ import annotations

import io
import logging
import sys
import unittest
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from miniforth_assembler import Parser, ParseError
from miniforth_vm_core import VM, ErrorKind, Instruction, MiniForthError, VMError

log = logging.getLogger(__name__)


@dataclass
class RunResult:
    ok: bool
    stack: List[int] = field(default_factory=list)
    error: Optional[MiniForthError] = None
    output: str = ""
    steps: int = 0

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None


def _run_vm(vm: VM) -> RunResult:
    try:
        vm.run()
    except VMError as e:
        log.debug("run failed: %s", e)
        return RunResult(False, list(e.stack), e, _output_of(vm), vm.steps)
    return RunResult(True, list(vm.stack), None, _output_of(vm), vm.steps)


def _output_of(vm: VM) -> str:
    return vm.out.getvalue() if hasattr(vm.out, "getvalue") else ""


def run_program(program: Sequence[Instruction], dictionary: Optional[Mapping[str, int]] = None,
                **vm_options: Any) -> RunResult:
    """Run a hand-built program; VM failures come back as a failed RunResult."""
    return _run_vm(VM(program, dictionary, **vm_options))


def run_source(text: str, **vm_options: Any) -> RunResult:
    """Assemble then run; parse errors come back as a failed RunResult too."""
    try:
        program, dictionary = Parser().parse(text)
    except ParseError as e:
        return RunResult(False, [], e)
    return run_program(program, dictionary, **vm_options)


class Session:
    """
    Contexte interactif.

    Chaque ligne est assemblée avec tous les mots connus, puis exécutée dans
    une VM neuve dont la pile de départ est celle laissée par la ligne
    précédente. Une ligne en erreur ne modifie ni la pile ni les mots.
    """

    def __init__(self, *, max_steps: Optional[int] = None, trace: bool = False) -> None:
        self.max_steps = max_steps
        self.trace = trace
        self.stack: List[int] = []
        self.words: Dict[str, List[Instruction]] = {}
        self.last_program: List[Instruction] = []
        self.last_dictionary: Dict[str, int] = {}

    def evaluate(self, line: str, *, out: Optional[Any] = None) -> RunResult:
        parser = Parser(self.words)
        try:
            parser.feed(line)
            words = parser.definitions()
            program, dictionary = parser.finalize()
        except ParseError as e:
            return RunResult(False, list(self.stack), e)

        vm = VM(program, dictionary, max_steps=self.max_steps, trace=self.trace,
                out=out if out is not None else io.StringIO(), initial_stack=self.stack)
        result = _run_vm(vm)
        if result.ok:
            self.stack = list(vm.stack)
            self.words = words
            self.last_program = program
            self.last_dictionary = dictionary
        return result

    def reset(self) -> None:
        self.stack = []
        self.words = {}
        self.last_program = []
        self.last_dictionary = {}

    def compiled(self) -> Tuple[List[Instruction], Dict[str, int]]:
        """Program and dictionary holding every known word (empty main body)."""
        return Parser(self.words).finalize()


####################################################################
# Tests
####################################################################

from miniforth_vm_core import InvalidInstruction, call, call_word, push, DUP, HALT, MUL, RETURN  # noqa: E402


class TestRunProgram(unittest.TestCase):
    def test_ok(self) -> None:
        res = run_program([push(5), call(3), HALT, DUP, MUL, RETURN])
        self.assertTrue(res.ok)
        self.assertEqual(res.stack, [25])
        self.assertIsNone(res.kind)
        self.assertEqual(res.steps, 6)

    def test_failure_is_a_result(self) -> None:
        res = run_program([push(1), MUL])
        self.assertFalse(res.ok)
        self.assertEqual(res.kind, ErrorKind.STACK_UNDERFLOW)
        self.assertEqual(res.stack, [1])
        self.assertEqual(res.error.ip, 1)

    def test_bad_dictionary_rejected_before_running(self) -> None:
        with self.assertRaises(InvalidInstruction):
            run_program([call_word("w"), HALT, RETURN], {"w": "2"})
        res = run_program([call_word("w"), HALT, RETURN], {"w": 2})
        self.assertTrue(res.ok)

    def test_options_forwarded(self) -> None:
        res = run_program([push(1), DUP], trace=True)
        self.assertIn("PUSH 1", res.output)


class TestRunSource(unittest.TestCase):
    def test_square(self) -> None:
        res = run_source("5 square : square dup * ;")
        self.assertTrue(res.ok)
        self.assertEqual(res.stack, [25])

    def test_parse_error(self) -> None:
        res = run_source(": oops 1")
        self.assertFalse(res.ok)
        self.assertEqual(res.kind, ErrorKind.MALFORMED_DEFINITION)

    def test_unknown_word(self) -> None:
        res = run_source("1 2 frob")
        self.assertEqual(res.kind, ErrorKind.UNKNOWN_WORD)
        self.assertEqual(res.stack, [1, 2])

    def test_step_limit(self) -> None:
        res = run_source(": loop loop ; loop", max_steps=100)
        self.assertEqual(res.kind, ErrorKind.STEP_LIMIT)


class TestSession(unittest.TestCase):
    def setUp(self) -> None:
        self.s = Session(max_steps=10_000)

    def test_stack_persists(self) -> None:
        self.assertTrue(self.s.evaluate("1 2").ok)
        res = self.s.evaluate("+")
        self.assertEqual(res.stack, [3])
        self.assertEqual(self.s.stack, [3])

    def test_words_persist(self) -> None:
        self.s.evaluate(": sq dup * ;")
        self.s.evaluate(": cube dup sq * ;")
        res = self.s.evaluate("3 cube")
        self.assertEqual(res.stack, [27])
        self.assertEqual(list(self.s.words), ["sq", "cube"])

    def test_failed_line_leaves_session_unchanged(self) -> None:
        self.s.evaluate("7 : sq dup * ;")
        res = self.s.evaluate(": bad 1 ; drop drop")
        self.assertFalse(res.ok)
        self.assertEqual(self.s.stack, [7])
        self.assertNotIn("bad", self.s.words)
        res = self.s.evaluate(": half")
        self.assertFalse(res.ok)
        self.assertEqual(res.stack, [7])

    def test_reset_and_compiled(self) -> None:
        self.s.evaluate(": sq dup * ; 2")
        program, dictionary = self.s.compiled()
        self.assertEqual(dictionary, {"sq": 1})
        self.assertEqual(program[0], HALT)
        self.s.reset()
        self.assertEqual(self.s.stack, [])
        self.assertEqual(self.s.words, {})


def test_all() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
