#!/usr/bin/env python3
"""
rsync Delta Patching

Applies an rsync-style binary delta to a reference file, producing the new
version.  The delta interleaves literal bytes carried in the stream with
byte ranges copied out of the reference.

Wire format (all integers big-endian, unsigned):
  magic(4) command* END(0)

  LITERAL_Nk   length(k)  payload(length)
  COPY_Nw_Nl   where(w)   length(l)

Operand widths are chosen per instruction from {1, 2, 4, 8} bytes, so the
opcode space holds 4 literal opcodes and 16 copy opcodes (librsync
numbering).

Usage:
  python rspatch.py patch <reference> <delta> <output>
  python rspatch.py info  <delta>
"""

import argparse
import io
import logging
import sys
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator, List, Optional, Union

logger = logging.getLogger("rspatch")


# ============================================================================
# Errors
# ============================================================================

class PatchError(Exception):
    """Base class for every structural failure while applying a delta.

    where/length are filled in by the patcher when the failure happened
    while executing an instruction.  opcode/field name the command byte
    and operand being decoded when its header was cut short.
    """

    where: Optional[int] = None
    length: Optional[int] = None
    opcode: Optional[int] = None
    field: Optional[str] = None

    def __str__(self):
        msg = super().__str__()
        ctx = []
        if self.opcode is not None:
            ctx.append(f"opcode={self.opcode:#04x}")
        if self.field is not None:
            ctx.append(f"field={self.field}")
        if self.where is not None:
            ctx.append(f"where={self.where}")
        if self.length is not None:
            ctx.append(f"length={self.length}")
        if ctx:
            msg = f"{msg} ({' '.join(ctx)})"
        return msg


class BadMagicError(PatchError):
    """The stream does not start with the delta magic."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"not a delta stream: magic {actual:#010x}, "
                         f"expected {expected:#010x}")


class ShortReadError(PatchError):
    """The delta ended in the middle of a fixed-width field."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"short read: expected {expected} bytes, got {actual}")


class TruncatedCopyError(PatchError):
    """A copy source ran out before the requested byte count."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"truncated copy: expected {expected} bytes, "
                         f"read {actual}")


class SeekFailedError(PatchError):
    def __init__(self, where: int, actual: Optional[int]):
        self.where = where
        self.actual = actual
        if actual is None:
            super().__init__(f"seek failed: cannot seek to {where}")
        else:
            super().__init__(f"seek failed: should seek to {where} but {actual}")


class WriteFailedError(PatchError):
    def __init__(self, expected: int, written: int):
        self.expected = expected
        self.written = written
        super().__init__(f"write failed: expected {expected} bytes, "
                         f"wrote {written}")


class UnknownOpcodeError(PatchError):
    def __init__(self, opcode: int):
        self.opcode = opcode
        super().__init__("invalid delta command")


# ============================================================================
# Delta Commands
# ============================================================================

@dataclass
class CopyCmd:
    """Copy reference[where : where+length] to the output."""
    where: int
    length: int

    def __repr__(self):
        return f"COPY(where={self.where}, len={self.length})"


@dataclass
class LiteralCmd:
    """Append length literal bytes carried in the delta.

    data is only needed when encoding; decoded commands leave it None.
    """
    length: int
    data: Optional[bytes] = None

    def __repr__(self):
        if self.data is not None and len(self.data) <= 20:
            return f"LITERAL({self.data!r})"
        return f"LITERAL(len={self.length})"


Command = Union[CopyCmd, LiteralCmd]


# ============================================================================
# Opcode table (librsync numbering)
#
# Literal opcodes carry one operand (length); copy opcodes carry two (where,
# then length).  The copy block is laid out where-width major:
#   0x45 + 4 * log2(where_width) + log2(length_width)
# ============================================================================

DELTA_MAGIC = 0x72730236
MAGIC_SIZE = 4
BUFFER_SIZE = 4096
WIDTHS = (1, 2, 4, 8)

OP_END = 0x00

OP_LITERAL_N1 = 0x41
OP_LITERAL_N2 = 0x42
OP_LITERAL_N4 = 0x43
OP_LITERAL_N8 = 0x44

OP_COPY_N1_N1 = 0x45
OP_COPY_N1_N2 = 0x46
OP_COPY_N1_N4 = 0x47
OP_COPY_N1_N8 = 0x48
OP_COPY_N2_N1 = 0x49
OP_COPY_N2_N2 = 0x4a
OP_COPY_N2_N4 = 0x4b
OP_COPY_N2_N8 = 0x4c
OP_COPY_N4_N1 = 0x4d
OP_COPY_N4_N2 = 0x4e
OP_COPY_N4_N4 = 0x4f
OP_COPY_N4_N8 = 0x50
OP_COPY_N8_N1 = 0x51
OP_COPY_N8_N2 = 0x52
OP_COPY_N8_N4 = 0x53
OP_COPY_N8_N8 = 0x54

KIND_COPY = 'copy'
KIND_LITERAL = 'literal'


@dataclass(frozen=True)
class Opcode:
    kind: str
    where_width: Optional[int]
    length_width: int


def _make_opcode_table():
    table = {}
    for i, lw in enumerate(WIDTHS):
        table[OP_LITERAL_N1 + i] = Opcode(KIND_LITERAL, None, lw)
    for i, ww in enumerate(WIDTHS):
        for j, lw in enumerate(WIDTHS):
            table[OP_COPY_N1_N1 + 4 * i + j] = Opcode(KIND_COPY, ww, lw)
    return MappingProxyType(table)

OPCODES = _make_opcode_table()

# reverse lookups for the encoder
_LITERAL_OPS = MappingProxyType(
    {op.length_width: cmd for cmd, op in OPCODES.items()
     if op.kind == KIND_LITERAL})
_COPY_OPS = MappingProxyType(
    {(op.where_width, op.length_width): cmd for cmd, op in OPCODES.items()
     if op.kind == KIND_COPY})


def classify(cmd: int) -> Opcode:
    """Look up a command byte.  The terminator is not a table entry."""
    try:
        return OPCODES[cmd]
    except KeyError:
        raise UnknownOpcodeError(cmd) from None


# ============================================================================
# Integer codec
# ============================================================================

def read_exact(stream, n: int) -> bytes:
    """Read up to n bytes, retrying partial reads until n or end of stream."""
    data = stream.read(n)
    if data is None:
        data = b''
    if len(data) == n:
        return data
    parts = [data]
    got = len(data)
    while got < n:
        chunk = stream.read(n - got)
        if not chunk:
            break
        parts.append(chunk)
        got += len(chunk)
    return b''.join(parts)


def decode_uint(stream, width: int) -> int:
    """Read a big-endian unsigned integer of 1, 2, 4 or 8 bytes."""
    if width not in WIDTHS:
        raise ValueError(f"invalid integer width: {width}")
    data = read_exact(stream, width)
    if len(data) != width:
        raise ShortReadError(width, len(data))
    return int.from_bytes(data, 'big')


def read_magic(stream, expected: int = DELTA_MAGIC) -> int:
    """Read and verify the 4-byte stream header."""
    magic = decode_uint(stream, MAGIC_SIZE)
    if magic != expected:
        raise BadMagicError(expected, magic)
    return magic


def encode_uint(value: int, width: int) -> bytes:
    if width not in WIDTHS:
        raise ValueError(f"invalid integer width: {width}")
    return value.to_bytes(width, 'big')


def min_width(value: int) -> int:
    """Smallest operand width that holds value."""
    if value < 0:
        raise ValueError(f"negative operand: {value}")
    for width in WIDTHS:
        if value < 1 << (8 * width):
            return width
    raise ValueError(f"operand does not fit in 64 bits: {value}")


# ============================================================================
# Chunked copy
# ============================================================================

class _NullSink:
    """Write target that discards everything (used to skip payloads)."""

    def write(self, data):
        return len(data)


def pipe(source, sink, length: int, buffer_size: int = BUFFER_SIZE) -> int:
    """Copy exactly length bytes from source to sink in bounded chunks.

    Every chunk must be read and written in full.  Returns bytes copied.
    """
    if buffer_size < 1:
        raise ValueError(f"buffer_size must be >= 1, got {buffer_size}")
    done = 0
    while done < length:
        n = min(buffer_size, length - done)
        chunk = read_exact(source, n)
        if len(chunk) != n:
            raise TruncatedCopyError(length, done + len(chunk))
        try:
            written = sink.write(chunk)
        except OSError as e:
            raise WriteFailedError(length, done) from e
        # raw streams may report short writes; buffered ones return None or n
        if written is not None and written != n:
            raise WriteFailedError(length, done + written)
        done += n
    return done


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class PatchOptions:
    """Options for applying a delta."""
    magic: int = DELTA_MAGIC
    buffer_size: int = BUFFER_SIZE
    verbose: bool = False

    def __post_init__(self):
        if self.buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {self.buffer_size}")


# ============================================================================
# Command decoding
# ============================================================================

def read_command(delta) -> Optional[Command]:
    """Decode the next instruction header from delta.

    Returns None at a clean end of stream or at the END command.  For a
    literal the payload is left unread at the current stream position.
    """
    raw = delta.read(1)
    if not raw:
        return None
    cmd = raw[0]
    if cmd == OP_END:
        return None
    op = classify(cmd)
    if op.kind == KIND_COPY:
        where = _decode_operand(delta, cmd, 'where', op.where_width)
        length = _decode_operand(delta, cmd, 'length', op.length_width, where)
        return CopyCmd(where=where, length=length)
    length = _decode_operand(delta, cmd, 'length', op.length_width)
    return LiteralCmd(length=length)


def _decode_operand(delta, cmd: int, field: str, width: int,
                    where: Optional[int] = None) -> int:
    try:
        return decode_uint(delta, width)
    except ShortReadError as e:
        e.opcode = cmd
        e.field = field
        e.where = where
        raise


def read_commands(delta, magic: Optional[int] = None,
                  buffer_size: int = BUFFER_SIZE) -> Iterator[Command]:
    """Yield every instruction of a delta stream without applying it.

    Literal payloads are consumed and discarded.
    """
    read_magic(delta, DELTA_MAGIC if magic is None else magic)
    sink = _NullSink()
    while True:
        cmd = read_command(delta)
        if cmd is None:
            return
        if isinstance(cmd, LiteralCmd):
            pipe(delta, sink, cmd.length, buffer_size)
        yield cmd


def delta_summary(commands: List[Command]) -> dict:
    """Return summary statistics for a list of instructions."""
    copies = [c for c in commands if isinstance(c, CopyCmd)]
    literals = [c for c in commands if isinstance(c, LiteralCmd)]
    copy_bytes = sum(c.length for c in copies)
    literal_bytes = sum(c.length for c in literals)
    return {
        'num_commands': len(commands),
        'num_copies': len(copies),
        'num_literals': len(literals),
        'copy_bytes': copy_bytes,
        'literal_bytes': literal_bytes,
        'total_output_bytes': copy_bytes + literal_bytes,
    }


def encode_delta(commands: List[Command], magic: Optional[int] = None) -> bytes:
    """Serialize instructions, choosing the smallest widths for each operand.

    Literal commands must carry their payload in data.
    """
    out = bytearray()
    out.extend(encode_uint(DELTA_MAGIC if magic is None else magic, MAGIC_SIZE))
    for cmd in commands:
        if isinstance(cmd, CopyCmd):
            ww = min_width(cmd.where)
            lw = min_width(cmd.length)
            out.append(_COPY_OPS[ww, lw])
            out.extend(encode_uint(cmd.where, ww))
            out.extend(encode_uint(cmd.length, lw))
        elif isinstance(cmd, LiteralCmd):
            if cmd.data is None or len(cmd.data) != cmd.length:
                raise ValueError(f"literal payload does not match length: {cmd!r}")
            lw = min_width(cmd.length)
            out.append(_LITERAL_OPS[lw])
            out.extend(encode_uint(cmd.length, lw))
            out.extend(cmd.data)
    out.append(OP_END)
    return bytes(out)


# ============================================================================
# Patching
# ============================================================================

class Patcher:
    """Applies one delta stream.

    delta:  forward-only binary reader holding the instructions
    target: seekable binary reader holding the reference data
    merged: binary writer receiving the reconstructed version
    """

    def __init__(self, delta, target, merged,
                 opts: Optional[PatchOptions] = None):
        self.delta = delta
        self.target = target
        self.merged = merged
        self.opts = opts or PatchOptions()
        self.written = 0

    def run(self) -> int:
        """Verify the header and execute every instruction.  Returns bytes written."""
        opts = self.opts
        read_magic(self.delta, opts.magic)
        logger.debug("patch start: magic %#010x", opts.magic)
        while True:
            cmd = read_command(self.delta)
            if cmd is None:
                break
            if opts.verbose:
                logger.debug("patch cmd: %r", cmd)
            try:
                if isinstance(cmd, CopyCmd):
                    self.patch_match(cmd.where, cmd.length)
                else:
                    self.patch_miss(cmd.length)
            except PatchError as e:
                if isinstance(cmd, CopyCmd):
                    e.where = cmd.where
                e.length = cmd.length
                raise
        logger.debug("patch done: %d bytes written", self.written)
        return self.written

    def patch_match(self, where: int, length: int) -> None:
        """Copy length bytes from the reference starting at where."""
        try:
            offset = self.target.seek(where, io.SEEK_SET)
        except (OSError, ValueError, OverflowError) as e:
            raise SeekFailedError(where, None) from e
        if offset != where:
            raise SeekFailedError(where, offset)
        self.written += pipe(self.target, self.merged, length,
                             self.opts.buffer_size)

    def patch_miss(self, length: int) -> None:
        """Copy length literal bytes that follow in the delta."""
        self.written += pipe(self.delta, self.merged, length,
                             self.opts.buffer_size)


def _resolve_opts(opts, magic, verbose, buffer_size) -> PatchOptions:
    opts = opts or PatchOptions()
    return PatchOptions(
        magic=opts.magic if magic is None else magic,
        buffer_size=opts.buffer_size if buffer_size is None else buffer_size,
        verbose=opts.verbose if verbose is None else verbose,
    )


def patch(delta, target, merged, opts: Optional[PatchOptions] = None, *,
          magic: Optional[int] = None, verbose: Optional[bool] = None,
          buffer_size: Optional[int] = None) -> int:
    """Reconstruct the version into merged from target + delta.

    On failure, bytes already written to merged are left as they are.
    Returns the number of bytes written.
    """
    return Patcher(delta, target, merged,
                   _resolve_opts(opts, magic, verbose, buffer_size)).run()


def patch_self(delta, target, opts: Optional[PatchOptions] = None):
    """Apply delta directly onto target without a separate output.

    TODO: in-place application needs copy ordering so that no instruction
    reads a region an earlier one overwrote; not defined for this format yet.
    """
    raise NotImplementedError("in-place patching is not supported")


# ── convenience wrappers ─────────────────────────────────────────────────

def apply_binary(original: bytes, delta: bytes,
                 opts: Optional[PatchOptions] = None, **kwargs) -> bytes:
    """Reconstruct version bytes from reference bytes + binary delta."""
    out = io.BytesIO()
    patch(io.BytesIO(delta), io.BytesIO(original), out, opts, **kwargs)
    return out.getvalue()


def patch_file(reference: str, delta: str, output: str,
               opts: Optional[PatchOptions] = None, **kwargs) -> int:
    """Apply the delta file to the reference file, writing output."""
    with open(reference, 'rb') as target, \
            open(delta, 'rb') as delta_rd, \
            open(output, 'wb') as merged:
        return patch(delta_rd, target, merged, opts, **kwargs)


# ============================================================================
# CLI
# ============================================================================

def _parse_magic(s: str) -> int:
    try:
        value = int(s, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid magic: {s!r}")
    if not 0 <= value < 1 << 32:
        raise argparse.ArgumentTypeError(f"magic out of range: {s!r}")
    return value


def cmd_patch(args):
    opts = PatchOptions(magic=args.magic, verbose=args.verbose)
    t0 = time.time()
    try:
        written = patch_file(args.reference, args.delta, args.output, opts)
    except PatchError as e:
        raise SystemExit(f"error: {e}")
    elapsed = time.time() - t0

    print(f"Reference:    {args.reference}")
    print(f"Delta:        {args.delta}")
    print(f"Output:       {args.output} ({written:,} bytes)")
    print(f"Time:         {elapsed:.3f}s")


def cmd_info(args):
    try:
        with open(args.delta, 'rb') as f:
            commands = list(read_commands(f, args.magic))
    except PatchError as e:
        raise SystemExit(f"error: {e}")
    stats = delta_summary(commands)

    print(f"Delta file:   {args.delta}")
    print(f"Magic:        {args.magic:#010x}")
    print(f"Commands:     {stats['num_commands']}")
    print(f"  Copies:     {stats['num_copies']} ({stats['copy_bytes']:,} bytes)")
    print(f"  Literals:   {stats['num_literals']} ({stats['literal_bytes']:,} bytes)")
    print(f"Output size:  {stats['total_output_bytes']:,} bytes")


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Apply rsync-style binary deltas')
    sub = ap.add_subparsers(dest='command')

    # patch
    pat = sub.add_parser('patch', help='Reconstruct version from delta')
    pat.add_argument('reference', help='Reference file')
    pat.add_argument('delta', help='Delta file')
    pat.add_argument('output', help='Output (reconstructed version) file')
    pat.add_argument('--magic', type=_parse_magic, default=DELTA_MAGIC,
                     help='Expected stream magic (default: %(default)#x)')
    pat.add_argument('--verbose', action='store_true',
                     help='Log each instruction to stderr')
    pat.set_defaults(func=cmd_patch)

    # info
    inf = sub.add_parser('info', help='Show delta file statistics')
    inf.add_argument('delta', help='Delta file')
    inf.add_argument('--magic', type=_parse_magic, default=DELTA_MAGIC,
                     help='Expected stream magic (default: %(default)#x)')
    inf.set_defaults(func=cmd_info)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    if getattr(args, 'verbose', False):
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr,
                            format="%(name)s: %(message)s")
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
