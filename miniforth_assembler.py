#!/usr/bin/env python3
# miniforth_assembler.py
#
# Assembleur miniforth : texte source -> (instructions, dictionnaire).
# - découpage sur les blancs
# - ':' nom ... ';' définit un mot
# - entiers -> PUSH, mots intégrés -> instruction, le reste -> CALL_WORD
# - les adresses des mots ne sont calculées qu'au finalize()
#
# Tests intégrés :
#   python miniforth_assembler.py --test

from __future__ import annotations

import logging
import re
import sys
import unittest
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from miniforth_vm_core import (
    ADD, DEPTH, DROP, DUP, HALT, I32_MAX, I32_MIN, MUL, NIP, OVER, RETURN, ROT,
    SWAP, TUCK, TWO_DROP, TWO_DUP, TWO_SWAP, ErrorKind, Instruction,
    MiniForthError, call_word, push,
)

log = logging.getLogger(__name__)

BUILTINS: Dict[str, Instruction] = {
    "+":     ADD,
    "*":     MUL,
    "dup":   DUP,
    "drop":  DROP,
    "swap":  SWAP,
    "over":  OVER,
    "rot":   ROT,
    "nip":   NIP,
    "tuck":  TUCK,
    "2dup":  TWO_DUP,
    "2drop": TWO_DROP,
    "2swap": TWO_SWAP,
    "depth": DEPTH,
}

COLON = ":"
SEMICOLON = ";"

_INT_RE = re.compile(r"[+-]?[0-9]+")


class ParseError(MiniForthError):
    """Assembly failure; ``token`` and ``position`` (index in the token stream) locate it."""

    def __init__(self, message: str, *, token: Optional[str] = None, position: int = -1) -> None:
        super().__init__(message)
        self.token = token
        self.position = position

    def __str__(self) -> str:
        msg = super().__str__()
        if self.token is None:
            return msg
        return f"{msg} (token {self.token!r} at {self.position})"


class MalformedDefinition(ParseError):  kind = ErrorKind.MALFORMED_DEFINITION
class InvalidLiteral(ParseError):       kind = ErrorKind.INVALID_LITERAL
class ParserFinalized(ParseError):      kind = ErrorKind.PARSER_FINALIZED


def tokenize(text: str) -> List[str]:
    return text.split()


def try_parse_int(tok: str) -> Optional[int]:
    """Decimal literal -> int, None if tok is not one. Raises InvalidLiteral outside 32 bits."""
    if not _INT_RE.fullmatch(tok):
        return None
    value = int(tok, 10)
    if not I32_MIN <= value <= I32_MAX:
        raise InvalidLiteral(f"literal out of signed 32-bit range: {tok}")
    return value


class Parser:
    """
    Single-use assembler.

    ``feed()`` may be called several times; definitions may span calls.
    ``finalize()`` lays out ``main + HALT + bodies`` and returns
    ``(instructions, dictionary)``. The parser refuses any use afterwards.
    """

    def __init__(self, words: Optional[Mapping[str, Sequence[Instruction]]] = None) -> None:
        self.main: List[Instruction] = []
        # corps des mots, ordre de définition (une redéfinition passe en fin)
        self.bodies: Dict[str, List[Instruction]] = {}
        # corps déjà compilés (session interactive), terminés par RETURN
        for name, body in (words or {}).items():
            self.bodies[name] = list(body)
        self.compiling: bool = False
        self.current_name: Optional[str] = None
        self.current_body: List[Instruction] = []
        self._expect_name: bool = False
        self._position: int = 0
        self._finalized: bool = False

    # --- état ---
    def _check_open(self, token: Optional[str] = None) -> None:
        if self._finalized:
            raise ParserFinalized("parser already finalized", token=token, position=self._position)

    def _emit(self, ins: Instruction) -> None:
        if self.compiling:
            self.current_body.append(ins)
        else:
            self.main.append(ins)

    # --- tokens ---
    def feed(self, text: str) -> None:
        self._check_open()
        for tok in tokenize(text):
            self.feed_token(tok)
            self._position += 1

    def feed_token(self, tok: str) -> None:
        self._check_open(tok)
        pos = self._position

        if self._expect_name:
            self._begin_definition(tok, pos)
            return

        if tok == COLON:
            if self.compiling:
                raise MalformedDefinition(
                    f"nested definition inside {self.current_name!r}", token=tok, position=pos)
            self._expect_name = True
            return

        if tok == SEMICOLON:
            if not self.compiling:
                raise MalformedDefinition("; outside a definition", token=tok, position=pos)
            self._end_definition()
            return

        try:
            val = try_parse_int(tok)
        except InvalidLiteral as e:
            e.token, e.position = tok, pos
            raise
        if val is not None:
            self._emit(push(val))
            return

        builtin = BUILTINS.get(tok)
        if builtin is not None:
            self._emit(builtin)
            return

        # résolu à l'exécution via le dictionnaire
        self._emit(call_word(tok))

    def _begin_definition(self, name: str, pos: int) -> None:
        self._expect_name = False
        if name in (COLON, SEMICOLON):
            raise MalformedDefinition(f"{name!r} is not a valid word name", token=name, position=pos)
        if _INT_RE.fullmatch(name):
            raise MalformedDefinition("a number cannot be a word name", token=name, position=pos)
        if name in BUILTINS:
            raise MalformedDefinition(f"cannot redefine built-in {name!r}", token=name, position=pos)
        self.compiling = True
        self.current_name = name
        self.current_body = []

    def _end_definition(self) -> None:
        assert self.current_name is not None
        self.current_body.append(RETURN)
        if self.current_name in self.bodies:
            log.debug("redefining word %r", self.current_name)
            del self.bodies[self.current_name]
        self.bodies[self.current_name] = self.current_body
        self.compiling = False
        self.current_name = None
        self.current_body = []

    def definitions(self) -> Dict[str, List[Instruction]]:
        """Copy of the word bodies completed so far, in definition order."""
        self._check_open()
        return {name: list(body) for name, body in self.bodies.items()}

    # --- sortie ---
    def finalize(self) -> Tuple[List[Instruction], Dict[str, int]]:
        self._check_open()
        if self._expect_name:
            raise MalformedDefinition("end of input: ':' without a word name", position=self._position)
        if self.compiling:
            raise MalformedDefinition(
                f"end of input inside definition of {self.current_name!r}",
                token=self.current_name, position=self._position)
        self._finalized = True

        program: List[Instruction] = list(self.main)
        program.append(HALT)
        dictionary: Dict[str, int] = {}
        for name, body in self.bodies.items():
            dictionary[name] = len(program)
            program.extend(body)
        log.debug("assembled %d instructions, %d words", len(program), len(dictionary))

        self.main = []
        self.bodies = {}
        return program, dictionary

    def parse(self, text: str) -> Tuple[List[Instruction], Dict[str, int]]:
        self.feed(text)
        return self.finalize()


def assemble(text: str) -> Tuple[List[Instruction], Dict[str, int]]:
    return Parser().parse(text)


####################################################################
# Tests
####################################################################

from miniforth_vm_core import VM, UnknownWord, call  # noqa: E402


class TestTokenize(unittest.TestCase):
    def test_whitespace(self) -> None:
        self.assertEqual(tokenize("  1\t2\n: sq dup * ;  "), ["1", "2", ":", "sq", "dup", "*", ";"])

    def test_try_parse_int(self) -> None:
        self.assertEqual(try_parse_int("42"), 42)
        self.assertEqual(try_parse_int("-7"), -7)
        self.assertEqual(try_parse_int("+3"), 3)
        self.assertIsNone(try_parse_int("2dup"))
        self.assertIsNone(try_parse_int("1_000"))
        self.assertIsNone(try_parse_int("-"))
        with self.assertRaises(InvalidLiteral):
            try_parse_int("2147483648")


class TestParser(unittest.TestCase):
    def test_square_example_layout(self) -> None:
        program, words = assemble("5 square : square dup * ;")
        self.assertEqual(program, [push(5), call_word("square"), HALT, DUP, MUL, RETURN])
        self.assertEqual(words, {"square": 3})

    def test_square_example_runs(self) -> None:
        program, words = assemble("5 square : square dup * ;")
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [25])

    def test_main_after_definitions(self) -> None:
        # les adresses restent justes même si main grandit après la définition
        program, words = assemble(": inc 1 + ; : twice dup + ; 3 inc twice 10 inc")
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [8, 11])
        self.assertEqual(program[words["inc"]], push(1))
        self.assertEqual(program[words["twice"]], DUP)

    def test_all_builtins(self) -> None:
        program, _ = assemble("1 2 3 4 2swap 2dup 2drop rot nip tuck over swap drop depth")
        self.assertEqual(program[4:-1], [TWO_SWAP, TWO_DUP, TWO_DROP, ROT, NIP, TUCK,
                                         OVER, SWAP, DROP, DEPTH])

    def test_words_calling_words(self) -> None:
        program, words = assemble(": sq dup * ; : quad sq sq ; 2 quad")
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [16])

    def test_redefinition_last_wins(self) -> None:
        program, words = assemble(": w 1 ; : v 2 ; : w 3 ; w v")
        self.assertEqual(list(words), ["v", "w"])
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [3, 2])

    def test_empty_definition(self) -> None:
        program, words = assemble(": nop ; 1 nop")
        self.assertEqual(program[words["nop"]], RETURN)
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [1])

    def test_undefined_word_deferred_to_runtime(self) -> None:
        program, words = assemble("1 ghost")
        self.assertEqual(program[1], call_word("ghost"))
        vm = VM(program, words)
        with self.assertRaises(UnknownWord):
            vm.run()

    def test_streaming_feed(self) -> None:
        p = Parser()
        p.feed(": sq dup")
        p.feed("* ; 4")
        p.feed("sq")
        program, words = p.finalize()
        vm = VM(program, words)
        vm.run()
        self.assertEqual(vm.stack, [16])

    def test_empty_source(self) -> None:
        self.assertEqual(assemble("   "), ([HALT], {}))

    def test_seeded_words(self) -> None:
        first = Parser()
        first.feed(": sq dup * ;")
        words = first.definitions()
        program, dictionary = Parser(words).parse("3 sq")
        self.assertEqual(dictionary, {"sq": 3})
        vm = VM(program, dictionary)
        vm.run()
        self.assertEqual(vm.stack, [9])


class TestParserErrors(unittest.TestCase):
    def test_semicolon_outside(self) -> None:
        with self.assertRaises(MalformedDefinition) as cm:
            assemble("1 ;")
        self.assertEqual(cm.exception.token, ";")
        self.assertEqual(cm.exception.position, 1)
        self.assertEqual(cm.exception.kind, ErrorKind.MALFORMED_DEFINITION)

    def test_nested_definition(self) -> None:
        with self.assertRaises(MalformedDefinition):
            assemble(": a : b ; ;")

    def test_unterminated(self) -> None:
        with self.assertRaises(MalformedDefinition):
            assemble(": a dup")
        with self.assertRaises(MalformedDefinition):
            assemble("1 :")

    def test_bad_names(self) -> None:
        for src in (": ; ;", ": : ;", ": 12 ;", ": dup 1 ;"):
            with self.assertRaises(MalformedDefinition, msg=src):
                assemble(src)

    def test_literal_out_of_range(self) -> None:
        with self.assertRaises(InvalidLiteral) as cm:
            assemble("1 -2147483649")
        self.assertEqual(cm.exception.position, 1)
        self.assertEqual(cm.exception.token, "-2147483649")

    def test_single_use(self) -> None:
        p = Parser()
        p.parse("1")
        with self.assertRaises(ParserFinalized):
            p.feed("2")
        with self.assertRaises(ParserFinalized):
            p.finalize()


class TestHandBuiltAgainstParsed(unittest.TestCase):
    def test_call_equivalent(self) -> None:
        program, words = assemble("5 sq : sq dup * ;")
        direct = [push(5), call(words["sq"])] + program[2:]
        a, b = VM(program, words), VM(direct)
        a.run(); b.run()
        self.assertEqual(a.stack, b.stack)


def test_all() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    test_all()
