import argparse
import logging
import os
import pathlib
import sys


DEFAULT_TAPE_SIZE = 30_000
WHITESPACE = " \t\n\r\f\v"

RESET = "\x1b[0m"
RED = "\x1b[91m"
BOLD = "\x1b[1m"

logger = logging.getLogger(__name__)


class InterpreterError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInstructionError(InterpreterError):
    def __init__(self, char: str, position: int):
        # undecodable source bytes arrive as lone surrogates
        raw = char.encode("utf-8", "surrogateescape")
        if len(raw) == 1:
            code = raw[0]
            shown = char if code < 0x80 else "\\x%02x" % code
        else:
            code = ord(char)
            shown = char
        super().__init__("invalid character: '%s' (ASCII code 0x%x) at index %d" % (shown, code, position))
        self.char = char
        self.position = position


class UnbalancedBracketError(InterpreterError):
    def __init__(self, char: str, position: int):
        super().__init__("unbalanced bracket: unmatched '%s' at index %d" % (char, position))
        self.char = char
        self.position = position


class InputStreamError(InterpreterError):
    pass


class OutputStreamError(InterpreterError):
    pass


class TapeAllocationError(InterpreterError):
    pass


class SourceError(InterpreterError):
    pass


class Tape:
    """
    A fixed-length, zero-initialized tape of byte cells with a circular cursor.

    The cursor lives here rather than in the evaluator, so every loop frame
    of a run sees the same position.
    """

    def __init__(self, size: int = DEFAULT_TAPE_SIZE):
        if size < 1:
            raise ValueError("tape size must be positive, got %d" % size)

        try:
            self.cells = bytearray(size)
        except (MemoryError, OverflowError) as err:
            raise TapeAllocationError("out of memory") from err

        self.cursor = 0
        logger.debug("allocated tape of %d cells", size)

    def __len__(self):
        return len(self.cells)

    @property
    def cell(self) -> int:
        return self.cells[self.cursor]

    @cell.setter
    def cell(self, value: int):
        self.cells[self.cursor] = value & 0xFF

    def move_to(self, cursor: int):
        if not 0 <= cursor < len(self.cells):
            raise ValueError("cursor %d outside of tape (%d cells)" % (cursor, len(self.cells)))
        self.cursor = cursor

    def right(self):
        self.cursor += 1
        if self.cursor == len(self.cells):
            self.cursor = 0

    def left(self):
        if self.cursor == 0:
            self.cursor = len(self.cells) - 1
        else:
            self.cursor -= 1

    def increment(self):
        self.cells[self.cursor] = (self.cells[self.cursor] + 1) & 0xFF

    def decrement(self):
        self.cells[self.cursor] = (self.cells[self.cursor] - 1) & 0xFF


def find_loop_end(text: str, index: int) -> int:
    """
    Given the index of an opening bracket, find its matched closing bracket.
    """
    depth = 0
    cursor = index
    while cursor < len(text):
        char = text[cursor]
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return cursor

        cursor += 1

    raise UnbalancedBracketError("[", index)


class Interpreter:
    """
    Runs program text against a tape, reading and writing single bytes on
    binary streams.
    """

    def __init__(self, input_stream=None, output_stream=None):
        self.input_stream = input_stream if input_stream is not None else sys.stdin.buffer
        self.output_stream = output_stream if output_stream is not None else sys.stdout.buffer

    def read_byte(self) -> int:
        try:
            data = self.input_stream.read(1)
        except (OSError, ValueError) as err:
            raise InputStreamError("failed to read from stdin: %s" % err) from err

        # end of input is not an error
        if not data:
            return 0
        return data[0]

    def write_byte(self, value: int):
        try:
            self.output_stream.write(bytes((value,)))
            self.output_stream.flush()
        except (OSError, ValueError) as err:
            raise OutputStreamError("failed to write to stdout: %s" % err) from err

    def evaluate(self, text: str, tape: Tape, cursor=None, is_top_level: bool = True, start: int = 0) -> int:
        """
        Execute `text` from index `start` against `tape`.

        A top-level run returns the length of the text once it completes. A
        nested run (is_top_level=False) treats `start` as the first character
        of a loop body, i.e. the one right after its `[`, and returns the
        index just past the matching `]` once that loop exits.

        Loop frames are kept on an explicit stack of opening-bracket indices;
        each iteration rescans the body text from the character after its
        `[`. Zero-cell loops are skipped with a forward scan whose result is
        memoized for the rest of the run.
        """
        if cursor is not None:
            tape.move_to(cursor)

        frames = [] if is_top_level else [start - 1]
        skips = {}

        logger.debug("evaluating %d characters from index %d (top level: %s)", len(text), start, is_top_level)

        ip = start
        while ip < len(text):
            char = text[ip]
            match char:
                case ">":
                    tape.right()
                case "<":
                    tape.left()
                case "+":
                    tape.increment()
                case "-":
                    tape.decrement()
                case ".":
                    self.write_byte(tape.cell)
                case ",":
                    tape.cell = self.read_byte()
                case "[":
                    if tape.cell:
                        frames.append(ip)
                    else:
                        if ip not in skips:
                            skips[ip] = find_loop_end(text, ip)
                            logger.debug("skipping loop at index %d to index %d", ip, skips[ip])
                        ip = skips[ip]
                case "]":
                    if not frames:
                        raise UnbalancedBracketError("]", ip)
                    if tape.cell:
                        ip = frames[-1] + 1
                        continue

                    frames.pop()
                    if not frames and not is_top_level:
                        return ip + 1
                case _:
                    if char not in WHITESPACE:
                        raise InvalidInstructionError(char, ip)
            ip += 1

        if frames:
            raise UnbalancedBracketError("[", frames[-1])

        logger.debug("evaluation finished at index %d", ip)
        return ip


def evaluate(text: str, tape: Tape, cursor=None, is_top_level: bool = True, start: int = 0,
             input_stream=None, output_stream=None) -> int:
    """
    Evaluate `text` with a one-off interpreter bound to the given streams.
    """
    interpreter = Interpreter(input_stream, output_stream)
    return interpreter.evaluate(text, tape, cursor, is_top_level, start)


# entry point
def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def report(message: str):
    prefix = "fatal: "
    if sys.stderr.isatty():
        prefix = RED + BOLD + prefix + RESET
    sys.stderr.write("%s%s\n" % (prefix, message))


def cell_count(value: str) -> int:
    # also accept the attached "-n=N" spelling
    if value.startswith("="):
        value = value[1:]

    cells = int(value, 10) if value.isascii() and value.isdigit() else 0

    if cells < 1:
        raise argparse.ArgumentTypeError("invalid number of cells: '%s'" % value)
    return cells


def read_source(path) -> str:
    if path is None:
        try:
            data = sys.stdin.buffer.read()
        except OSError as err:
            raise SourceError("failed to read file") from err
        return data.decode("utf-8", errors="surrogateescape")

    try:
        fp = open(path, "r", encoding="utf-8", errors="surrogateescape")
    except OSError as err:
        raise SourceError("failed to open file: %s (errno %d)" % (err.strerror, err.errno)) from err

    with fp:
        try:
            return fp.read()
        except OSError as err:
            raise SourceError("failed to read file") from err


def read_options(argv=None):
    parser = argparse.ArgumentParser(prog="bfi", description="Run a program on a circular byte tape.")
    parser.add_argument("source", type=pathlib.Path, nargs="?",
                        help="The file to interpret. Standard input is read when omitted.")
    parser.add_argument("-n", "--cells", type=cell_count,
                        default=os.environ.get("BFI_CELLS", str(DEFAULT_TAPE_SIZE)),
                        help="Number of cells in the tape (default: $BFI_CELLS or %d)." % DEFAULT_TAPE_SIZE)
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug information to stderr.")

    return parser.parse_args(argv)


def main(argv=None):
    options = read_options(argv)
    setup_logging(options.verbose)

    output = sys.stdout.buffer
    try:
        source = read_source(options.source)
        tape = Tape(options.cells)
        Interpreter(sys.stdin.buffer, output).evaluate(source, tape)
    except InterpreterError as err:
        if not isinstance(err, OutputStreamError):
            output.flush()
        report(err.message)
        sys.exit(1)

    output.flush()


if __name__ == '__main__':
    main()
