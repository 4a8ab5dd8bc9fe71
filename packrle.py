import os
import sys
from enum import Enum
from typing import (
    List,
    Optional,
    Sequence,
    Tuple,
)
from typing_extensions import Final

byte = int

DEBUG = bool(int(os.environ.get("DEBUG", False)))

# Wire format: any byte but ESCAPE is a literal. ESCAPE is followed either
# by a second ESCAPE (one literal ESCAPE byte) or by an LEB128 run length
# and the run's value byte.
ESCAPE: Final[byte] = 0x00
MIN_RUN: Final[int] = 3
MAX_RUN: Final[int] = 1 << 24
SUFFIX: Final[str] = ".rle"

USAGE: Final[str] = "usage: pack-rle (-z | -u | -t) [-o OUTPUT] [INPUT]"


def debug(*args, **kwargs):
    if DEBUG:
        print(*args, **kwargs, file=sys.stderr)


def encode_length(length: int) -> bytes:
    out = bytearray()
    while True:
        group, length = length & 0x7F, length >> 7
        if not length:
            out.append(group)
            return bytes(out)
        out.append(group | 0x80)


class MalformedStream(ValueError):
    """Raised when an encoded stream does not follow the token grammar.

    `offset` is the position in the encoded input where decoding stopped,
    `found` the byte seen there (None at end of stream).
    """

    def __init__(
        self, offset: int, expected: str, found: Optional[byte], reason: str
    ) -> None:
        self.offset = offset
        self.expected = expected
        self.found = found
        got = "end of stream" if found is None else f"{found:#04x}"
        super().__init__(
            f"{reason} at offset {offset}: expected {expected}, found {got}"
        )


class Compressor:
    def encode(self, data: bytes) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes) -> bytes:
        raise NotImplementedError

    def test(self) -> None:
        tests = [
            b"",
            b"abc",
            b"aaabbbbbccd",
            b"aab0bb0012",
            "λaé".encode(),
            b"a" * 1000,
            b"ababcaab",
            b"\x00",
            b"\x00\x00",
            b"\x00" * 300,
            b"\x80\x00\x81\x00\x00\x01",
            bytes(range(256)),
        ]
        for test in tests:
            roundtrip = self.decode(self.encode(test))
            assert roundtrip == test, f"{roundtrip!r} != {test!r}"


class Run:
    def __init__(self, value: byte, length: int):
        self.value = value
        self.length = length

    def encode(self) -> bytes:
        if self.value == ESCAPE and self.length == 1:
            return bytes((ESCAPE, ESCAPE))
        if self.value == ESCAPE or self.length >= MIN_RUN:
            return bytes((ESCAPE,)) + encode_length(self.length) + bytes((self.value,))
        return self.pack()

    def pack(self) -> bytes:
        return bytes((self.value,)) * self.length


class State(Enum):
    NORMAL = "a literal or an escape marker"
    AFTER_MARKER = "an escape marker or a run length"
    READING_LENGTH = "the rest of the run length"
    READING_VALUE = "the run value"


class RLE(Compressor):
    def __init__(self, max_run: int = MAX_RUN) -> None:
        if max_run < 1:
            raise ValueError(f"max_run must be positive, not {max_run}")
        self.max_run = max_run
        # no length group may start at or beyond this many bits
        self.max_shift = max_run.bit_length()

    def encode(self, data: bytes) -> bytes:
        out = bytearray()
        for run in self.runs(data, self.max_run):
            token = run.encode()
            if run.value == ESCAPE or run.length >= MIN_RUN:
                debug(f"Emitting {token!r} for {run.length} x {run.value:#04x}")
            out += token
        debug(f"Encoded {len(data)} bytes into {len(out)}")
        return bytes(out)

    def decode(self, data: bytes) -> bytes:
        out = bytearray()
        state = State.NORMAL
        length = shift = 0
        for offset, b in enumerate(data):
            if state is State.NORMAL:
                if b == ESCAPE:
                    state = State.AFTER_MARKER
                else:
                    out.append(b)
            elif state is State.AFTER_MARKER and b == ESCAPE:
                out.append(ESCAPE)
                state = State.NORMAL
            elif state is not State.READING_VALUE:
                if shift >= self.max_shift:
                    raise MalformedStream(
                        offset, state.value, b, "run length field too long"
                    )
                length |= (b & 0x7F) << shift
                shift += 7
                if length > self.max_run:
                    raise MalformedStream(
                        offset,
                        f"a run length of at most {self.max_run}",
                        b,
                        f"run length {length} out of range",
                    )
                if b & 0x80:
                    state = State.READING_LENGTH
                elif length == 0:
                    raise MalformedStream(
                        offset, "a run length of at least 1", b, "zero-length run"
                    )
                else:
                    state = State.READING_VALUE
            else:
                debug(f"Expanding {length} x {b:#04x} at offset {offset}")
                out += bytes((b,)) * length
                state = State.NORMAL
                length = shift = 0

        if state is not State.NORMAL:
            raise MalformedStream(len(data), state.value, None, "truncated stream")
        return bytes(out)

    @staticmethod
    def runs(data: bytes, limit: int = MAX_RUN) -> Sequence[Run]:
        if len(data) == 0:
            return []

        runs = [Run(data[0], 0)]
        for value in data:
            prev = runs[-1]
            if prev.value == value and prev.length < limit:
                prev.length += 1
            else:
                runs.append(Run(value, 1))

        return runs


_codec: Final[RLE] = RLE()


def pack(data: bytes) -> bytes:
    return _codec.encode(data)


def unpack(data: bytes) -> bytes:
    return _codec.decode(data)


class UsageError(Exception):
    pass


def parse_args(args: Sequence[str]) -> Tuple[str, Optional[str], Optional[str]]:
    """Split a pack-rle command line into (mode, input, output).

    `mode` is one of -z, -u, -t. A missing or "-" input means stdin;
    a missing output is left for `output_name` to derive.
    """
    mode: Optional[str] = None
    output: Optional[str] = None
    inputs: List[str] = []
    it = iter(args)
    for arg in it:
        if arg in ("-z", "-u", "-t"):
            if mode is not None and mode != arg:
                raise UsageError(f"{arg} cannot be combined with {mode}")
            mode = arg
        elif arg in ("-o", "-out", "--output"):
            output = next(it, None)
            if output is None:
                raise UsageError(f"{arg} needs a file name")
        elif arg.startswith("-") and arg != "-":
            raise UsageError(f"unknown option {arg}")
        else:
            inputs.append(arg)

    if mode is None:
        raise UsageError("one of -z, -u or -t is required")
    if len(inputs) > 1:
        raise UsageError(f"expected one input file, got {len(inputs)}")
    return mode, (inputs[0] if inputs else None), output


def output_name(input_name: str, mode: str) -> str:
    if mode == "-z":
        return input_name + SUFFIX
    if input_name.endswith(SUFFIX) and len(input_name) > len(SUFFIX):
        return input_name[: -len(SUFFIX)]
    return input_name + ".out"


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    try:
        mode, input_path, output_path = parse_args(args)
    except UsageError as e:
        print(f"pack-rle: {e}\n{USAGE}", file=sys.stderr)
        return 2

    if mode == "-t":
        RLE().test()
        return 0

    if output_path is None and input_path not in (None, "-"):
        output_path = output_name(input_path, mode)
    debug(f"Mode {mode}, input {input_path}, output {output_path}")

    try:
        if input_path in (None, "-"):
            data = sys.stdin.buffer.read()
        else:
            with open(input_path, "rb") as f:
                data = f.read()

        result = pack(data) if mode == "-z" else unpack(data)

        if output_path in (None, "-"):
            sys.stdout.buffer.write(result)
            sys.stdout.buffer.flush()
        else:
            with open(output_path, "wb") as f:
                f.write(result)
    except (MalformedStream, OSError) as e:
        print(f"pack-rle: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
