#!/usr/bin/env python3
# miniforth_repl.py
#
# REPL et point d'entrée ligne de commande pour miniforth :
# - les lignes Forth sont évaluées dans une Session (pile et mots conservés)
# - les commandes commençant par '.' sont des dot-commands :
#     .help .stack .dict .see <mot> .dis .steps [n] .trace [on|off] .reset .bye
#
# Usage :
#   python miniforth_repl.py                 -> REPL interactif (prompt_toolkit)
#   python miniforth_repl.py prog.fs         -> exécute le fichier, affiche la pile finale
#   python miniforth_repl.py --test          -> tests intégrés

from __future__ import annotations

import argparse
import io
import logging
import sys
import traceback
import unittest
from typing import Callable, Dict, List, Optional

from miniforth_assembler import BUILTINS, COLON, SEMICOLON
from miniforth_runtime import RunResult, Session, run_source
from miniforth_vm_core import disassemble

REPL_MAX_STEPS = 1_000_000


def format_stack(stack: List[int]) -> str:
    return f"<{len(stack)}> " + " ".join(map(str, stack))


def format_error(result: RunResult) -> str:
    err = result.error
    return f"error: {err.kind.value}: {err}"


class MiniForthREPL:
    """
    REPL texte par-dessus une Session.

    - évalue les lignes Forth et affiche la pile après chaque ligne
    - intercepte les dot-commands (.stack, .see, ...)
    """

    def __init__(self, *, max_steps: Optional[int] = REPL_MAX_STEPS, trace: bool = False) -> None:
        self.session = Session(max_steps=max_steps, trace=trace)

    # ------------------------------------------------------------------
    # Lignes
    # ------------------------------------------------------------------

    def handle_line(self, line: str, out) -> None:
        stripped = line.strip()
        if not stripped:
            return
        if stripped.startswith("."):
            self.handle_dot_command(stripped, out)
            return
        trace_buf = io.StringIO()
        try:
            result = self.session.evaluate(line, out=trace_buf)
        except Exception as e:
            # ne devrait pas arriver : on affiche la trace complète
            out.write(f"internal error: {e}\n")
            out.write(traceback.format_exc())
            return
        out.write(trace_buf.getvalue())
        if result.ok:
            out.write(f"ok {format_stack(result.stack)}\n")
        else:
            out.write(format_error(result) + "\n")

    # ------------------------------------------------------------------
    # Dot-commands
    # ------------------------------------------------------------------

    def _dotcmd_dispatch(self) -> Dict[str, Callable[[List[str], io.StringIO], None]]:
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".dict": self._dot_dict,
            ".see": self._dot_see,
            ".dis": self._dot_dis,
            ".steps": self._dot_steps,
            ".trace": self._dot_trace,
            ".reset": self._dot_reset,
            ".bye": self._dot_bye,
        }

    def handle_dot_command(self, line: str, out) -> None:
        parts = line.split()
        cmd, args = parts[0], parts[1:]
        h = self._dotcmd_dispatch().get(cmd)
        if not h:
            out.write(f"unknown dot-cmd: {cmd}\n")
            return
        h(args, out)

    def _dot_help(self, args, out):
        out.write(".stack .dict [.see <w>] .dis\n")
        out.write(".steps [n] / .trace [on|off] / .reset / .bye\n")

    def _dot_stack(self, args, out):
        out.write(format_stack(self.session.stack) + "\n")

    def _dot_dict(self, args, out):
        filt = args[0] if args else None
        names = list(self.session.words)
        if filt:
            names = [n for n in names if filt.lower() in n.lower()]
        out.write(" ".join(sorted(names)) + "\n")

    def _dot_see(self, args, out):
        if not args:
            out.write("unknown: \n"); return
        body = self.session.words.get(args[0])
        if body is None:
            out.write(f"unknown: {args[0]}\n"); return
        out.write(f"{COLON} {args[0]}  " + " ".join(map(str, body[:-1])) + f" {SEMICOLON}\n")

    def _dot_dis(self, args, out):
        program, dictionary = self.session.last_program, self.session.last_dictionary
        if not program:
            out.write("(nothing assembled yet)\n"); return
        out.write(disassemble(program, dictionary) + "\n")

    def _dot_steps(self, args, out):
        if args:
            try:
                n = int(args[0])
            except ValueError:
                out.write("usage: .steps [n]  (0 = unlimited)\n"); return
            self.session.max_steps = n if n > 0 else None
        out.write(f"max_steps={self.session.max_steps or 'unlimited'}\n")

    def _dot_trace(self, args, out):
        if args:
            self.session.trace = args[0].lower() in ("on", "1", "yes", "true")
        out.write(f"trace={'on' if self.session.trace else 'off'}\n")

    def _dot_reset(self, args, out):
        self.session.reset()
        out.write("reset\n")

    def _dot_bye(self, args, out):
        out.write("bye.\n")
        raise SystemExit(0)

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession)
    # ------------------------------------------------------------------

    def run(self) -> None:
        """
        Boucle REPL interactive basée sur prompt_toolkit, avec complétion
        des dot-commands, des mots intégrés et des mots de la session.
        """
        try:
            from prompt_toolkit import PromptSession
            from prompt_toolkit.completion import Completer, Completion
        except ImportError:  # pragma: no cover
            print("prompt_toolkit n'est pas installé. Fais : pip install prompt_toolkit")
            sys.exit(1)

        print("miniforth REPL")
        print("Type Forth code; .help for dot-commands, .bye or Ctrl-D to quit.")

        outer = self
        dot_cmds = sorted(self._dotcmd_dispatch())

        class MiniForthCompleter(Completer):
            def get_completions(self, document, complete_event):
                word_before = document.get_word_before_cursor(WORD=True)
                if not word_before:
                    return
                start_pos = -len(word_before)
                if word_before.startswith("."):
                    candidates = dot_cmds
                else:
                    candidates = sorted(set(BUILTINS) | set(outer.session.words))
                for name in candidates:
                    if name.startswith(word_before):
                        yield Completion(name, start_position=start_pos)

        session = PromptSession(completer=MiniForthCompleter())

        while True:
            try:
                line = session.prompt(f"[{len(self.session.stack)}] miniforth> ")
            except EOFError:
                print("\nEOF -> quitting.")
                break
            except KeyboardInterrupt:
                print("\nKeyboardInterrupt (Ctrl-C). Use .bye to exit.")
                continue

            out = io.StringIO()
            try:
                self.handle_line(line, out)
            except SystemExit:
                sys.stdout.write(out.getvalue())
                return
            sys.stdout.write(out.getvalue())
            sys.stdout.flush()


# ======================================================================
# Ligne de commande
# ======================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="miniforth", description="miniforth stack VM")
    ap.add_argument("file", nargs="?", help="source file to run (REPL if omitted)")
    ap.add_argument("--max-steps", type=int, default=None,
                    help="abort after N instructions (0 = unlimited)")
    ap.add_argument("--trace", action="store_true", help="print every executed instruction")
    ap.add_argument("--debug", action="store_true", help="enable debug logging")
    ap.add_argument("--test", action="store_true", help="run the built-in tests")
    return ap


def run_file(path: str, *, max_steps: Optional[int], trace: bool, out=None) -> int:
    out = out if out is not None else sys.stdout
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        out.write(f"cannot open {path!r}: {e}\n")
        return 2
    result = run_source(text, max_steps=max_steps, trace=trace)
    out.write(result.output)
    if not result.ok:
        out.write(format_error(result) + "\n")
        return 1
    out.write(f"Final stack: {result.stack}\n")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)5s %(name)s: %(message)s")
    if args.test:
        test_all()
        return 0
    if args.max_steps is not None:
        max_steps = args.max_steps if args.max_steps > 0 else None
    else:
        max_steps = None if args.file else REPL_MAX_STEPS
    if args.file:
        return run_file(args.file, max_steps=max_steps, trace=args.trace)
    MiniForthREPL(max_steps=max_steps, trace=args.trace).run()
    return 0


# ======================================================================
# Tests intégrés (python miniforth_repl.py --test)
# ======================================================================

import os  # noqa: E402
import tempfile  # noqa: E402


class TestREPL_Lines(unittest.TestCase):
    def setUp(self) -> None:
        self.repl = MiniForthREPL(max_steps=10_000)

    def feed(self, line: str) -> str:
        out = io.StringIO()
        self.repl.handle_line(line, out)
        return out.getvalue()

    def test_forth_line_prints_stack(self) -> None:
        self.assertEqual(self.feed("2 3 +"), "ok <1> 5\n")
        self.assertEqual(self.feed("4 *"), "ok <1> 20\n")

    def test_error_reported_and_session_kept(self) -> None:
        self.feed("1")
        out = self.feed("+")
        self.assertIn("error: STACK_UNDERFLOW", out)
        self.assertEqual(self.repl.session.stack, [1])

    def test_blank_line(self) -> None:
        self.assertEqual(self.feed("   "), "")

    def test_trace_output(self) -> None:
        self.feed(".trace on")
        out = self.feed("7 dup")
        self.assertIn("PUSH 7", out)
        self.assertTrue(out.endswith("ok <2> 7 7\n"))


class TestREPL_DotCommands(unittest.TestCase):
    def setUp(self) -> None:
        self.repl = MiniForthREPL(max_steps=10_000)
        self.repl.handle_line(": sq dup * ; : cube dup sq * ; 2 cube", io.StringIO())

    def dot(self, line: str) -> str:
        out = io.StringIO()
        self.repl.handle_dot_command(line, out)
        return out.getvalue()

    def test_stack(self) -> None:
        self.assertEqual(self.dot(".stack"), "<1> 8\n")

    def test_dict(self) -> None:
        self.assertEqual(self.dot(".dict"), "cube sq\n")
        self.assertEqual(self.dot(".dict cu"), "cube\n")

    def test_see(self) -> None:
        self.assertEqual(self.dot(".see cube"), ": cube  DUP CALL_WORD sq MUL ;\n")
        self.assertIn("unknown", self.dot(".see nope"))

    def test_dis(self) -> None:
        out = self.dot(".dis")
        self.assertIn("sq:", out)
        self.assertIn("HALT", out)

    def test_steps(self) -> None:
        self.assertEqual(self.dot(".steps 5"), "max_steps=5\n")
        out = io.StringIO()
        self.repl.handle_line(": spin spin ; spin", out)
        self.assertIn("STEP_LIMIT", out.getvalue())
        self.assertEqual(self.dot(".steps 0"), "max_steps=unlimited\n")

    def test_reset(self) -> None:
        self.dot(".reset")
        self.assertEqual(self.dot(".stack"), "<0> \n")
        self.assertEqual(self.dot(".dict"), "\n")

    def test_unknown_and_bye(self) -> None:
        self.assertIn("unknown dot-cmd", self.dot(".frob"))
        with self.assertRaises(SystemExit):
            self.dot(".bye")


class TestCommandLine(unittest.TestCase):
    def _write(self, text: str) -> str:
        fd, path = tempfile.mkstemp(suffix=".fs")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        self.addCleanup(os.remove, path)
        return path

    def test_run_file(self) -> None:
        path = self._write("5 square\n: square dup * ;\n")
        out = io.StringIO()
        self.assertEqual(run_file(path, max_steps=None, trace=False, out=out), 0)
        self.assertEqual(out.getvalue(), "Final stack: [25]\n")

    def test_run_file_error(self) -> None:
        path = self._write("1 ;")
        out = io.StringIO()
        self.assertEqual(run_file(path, max_steps=None, trace=False, out=out), 1)
        self.assertIn("MALFORMED_DEFINITION", out.getvalue())

    def test_missing_file(self) -> None:
        out = io.StringIO()
        self.assertEqual(run_file("/nonexistent/x.fs", max_steps=None, trace=False, out=out), 2)

    def test_arg_parser(self) -> None:
        args = build_arg_parser().parse_args(["prog.fs", "--max-steps", "10", "--trace"])
        self.assertEqual(args.file, "prog.fs")
        self.assertEqual(args.max_steps, 10)
        self.assertTrue(args.trace)


def test_all() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    sys.exit(main())
