#!/usr/bin/env python3
"""
Name: xargs
Description: construct argument list(s) and execute utility
Author: Rob Landley, rob@landley.net
License: 0BSD

Reads whitespace (or NUL) delimited arguments from standard input and runs
COMMAND one or more times with as many of them appended as fit in a single
command line. If COMMAND exits with 255, no further commands are launched
even if arguments remain.
"""

import sys
import os
import argparse
import struct
import subprocess
from enum import Enum

# Size of one argv slot, charged per argument unless -s is given.
POINTER_SIZE = struct.calcsize('P')

# POSIX asks for 2048 bytes of room for the utility to modify its own
# arguments and environment; reserve twice that.
ARG_MAX_HEADROOM = 4096

# Used when sysconf can't tell us ARG_MAX.
FALLBACK_ARG_MAX = 131072

# Same set as C isspace() in the "C" locale.
WHITESPACE = b' \t\n\r\x0b\x0c'


class XargsError(Exception):
    """A fatal condition that ends the run with status 1."""


class Outcome(Enum):
    CONSUMED = 1    # hit a limit, but the record was used up
    EOF_STRING = 2  # hit the -E string


class Limits:
    """Per-invocation limits, fixed for the whole run."""
    def __init__(self, size, max_entries=None, eof_str=None, null=False, size_given=False):
        self.size = size
        self.max_entries = max_entries
        self.eof_str = eof_str
        self.null = null
        self.size_given = size_given


class BatchState:
    """Running entry and byte counts for the batch being built."""
    def __init__(self, nbytes=0):
        self.reset(nbytes)

    def reset(self, nbytes):
        self.entries = 0
        self.nbytes = nbytes


# --- 1. Limits ---

def arg_max():
    try:
        value = os.sysconf('SC_ARG_MAX')
    except (ValueError, OSError, AttributeError):
        return FALLBACK_ARG_MAX
    return value if value > 0 else FALLBACK_ARG_MAX


def environ_bytes(environ=None):
    """Bytes the environment takes up in a child's exec image."""
    if environ is None:
        environ = os.environ
    total = POINTER_SIZE
    for key, value in environ.items():
        entry = os.fsencode(key) + b'=' + os.fsencode(value)
        total += POINTER_SIZE + len(entry) + 1
    return total


def resolve_limits(args, environ=None):
    """Build the Limits for a parsed command line."""
    size_given = bool(args.size)
    if size_given:
        size = args.size
    else:
        size = arg_max() - environ_bytes(environ) - ARG_MAX_HEADROOM

    eof_str = os.fsencode(args.eof_str) if args.eof_str is not None else None
    return Limits(size, max_entries=args.max_args, eof_str=eof_str,
                  null=args.null, size_given=size_given)


def template_bytes(template, limits):
    """
    Bytes the fixed part of the command line uses. Raises XargsError if the
    template alone doesn't fit.
    """
    nbytes = -1
    for arg in template:
        nbytes += len(arg) + 1
        if not limits.size_given:
            nbytes += POINTER_SIZE
    if nbytes >= limits.size:
        raise XargsError("command too long")
    return nbytes


# --- 2. Counting and splitting input ---

def handle_entries(data, state, limits, entry=None):
    """
    Account for one input record in the current batch.

    Without `entry` this only advances the counters in `state`; with a
    list it also appends the arguments found. Returns None when the whole
    record fit and more input is wanted, the unconsumed tail of `data`
    when a limit was hit part way through, Outcome.CONSUMED when a limit
    was hit with nothing left over, or Outcome.EOF_STRING when the -E
    string was found.
    """
    if limits.null:
        nbytes = state.nbytes + len(data) + 1
        if not limits.size_given:
            nbytes += POINTER_SIZE
        if nbytes >= limits.size or (limits.max_entries and state.entries >= limits.max_entries):
            return data
        state.nbytes = nbytes
        if entry is not None:
            entry.append(data)
        state.entries += 1
        return None

    length = len(data)
    pos = 0
    while pos < length:
        while pos < length and data[pos] in WHITESPACE:
            pos += 1
        if limits.max_entries and state.entries >= limits.max_entries:
            return data[pos:] if pos < length else Outcome.CONSUMED
        if pos == length:
            break
        start = pos

        # With -s the budget is taken literally: no argv slot overhead.
        if not limits.size_given:
            state.nbytes += POINTER_SIZE + 1
        while True:
            state.nbytes += 1
            if state.nbytes >= limits.size:
                return data[start:]
            if pos == length or data[pos] in WHITESPACE:
                break
            pos += 1

        token = data[start:pos]
        if limits.eof_str is not None and token == limits.eof_str:
            return Outcome.EOF_STRING
        if entry is not None:
            entry.append(token)
        state.entries += 1

    return None


def assemble(template, queue, state, limits, base):
    """Replay the queued records into the argv for one invocation."""
    argv = list(template)
    state.reset(base)
    for data in queue:
        handle_entries(data, state, limits, argv)
    return argv


def read_records(stream, null=False):
    """
    Yield raw records: lines, or NUL terminated chunks with -0. Without -0
    a line ends at its first NUL byte, which can't be passed in an argv.
    """
    if not null:
        for line in stream:
            yield line.partition(b'\0')[0]
        return

    pending = b''
    for chunk in iter(lambda: stream.read(8192), b''):
        pending += chunk
        *records, pending = pending.split(b'\0')
        yield from records
    if pending:
        yield pending


# --- 3. Tracing and prompting ---

def open_tty():
    return open('/dev/tty', 'r')


class Prompter:
    """Handles -t and -p. The tty is opened the first time it's needed."""
    def __init__(self, trace=False, prompt=False, tty_opener=open_tty):
        self.trace = trace
        self.prompt = prompt
        self.tty_opener = tty_opener
        self.tty = None

    def confirm(self, argv):
        """Show the command line if asked to. False means don't run it."""
        if not (self.trace or self.prompt):
            return True

        for arg in argv:
            sys.stderr.write(os.fsdecode(arg) + ' ')
        if not self.prompt:
            sys.stderr.write('\n')
            return True

        sys.stderr.write('? (y/N):')
        sys.stderr.flush()
        if self.tty is None:
            try:
                self.tty = self.tty_opener()
            except OSError as e:
                raise XargsError(f"/dev/tty: {e.strerror or e}")
        return self.read_answer()

    def read_answer(self):
        """
        Reads up to the first whitespace character. The last 'y' or 'n'
        seen decides; anything else (or nothing) means no.
        """
        answer = False
        while True:
            char = self.tty.read(1)
            if not char or char.isspace():
                return answer
            if char.lower() in ('y', 'n'):
                answer = char.lower() == 'y'

    def close(self):
        if self.tty is not None:
            self.tty.close()
            self.tty = None


# --- 4. Running commands ---

def run_command(argv, use_tty=False):
    """
    Runs argv with stdin from /dev/null (or the tty with -o) and returns
    its returncode. Failures to exec map to 127 and 126 like a shell; a
    tty that can't be opened for -o counts as a plain failure (1).
    """
    program_name = os.path.basename(sys.argv[0])
    command = os.fsdecode(argv[0])
    try:
        if use_tty:
            try:
                tty = open('/dev/tty', 'rb')
            except OSError as e:
                print(f"{program_name}: /dev/tty: {e.strerror or e}", file=sys.stderr)
                return 1
            with tty:
                proc = subprocess.run(argv, stdin=tty)
        else:
            proc = subprocess.run(argv, stdin=subprocess.DEVNULL)
    except FileNotFoundError:
        print(f"{program_name}: {command}: No such file or directory", file=sys.stderr)
        return 127
    except OSError as e:
        print(f"{program_name}: {command}: {e.strerror or e}", file=sys.stderr)
        return 126
    return proc.returncode


def classify_status(status, exit_status, argv):
    """
    Fold one child's returncode into the run's exit status.
    Returns (exit_status, abort).
    """
    if status < 0:
        # Killed by a signal. Keep going.
        return 127, False
    if status in (126, 127):
        return status, True
    if 1 <= status <= 125:
        return 123, False
    if status == 255:
        program_name = os.path.basename(sys.argv[0])
        print(f"{program_name}: {os.fsdecode(argv[0])}: exited with status 255; aborting", file=sys.stderr)
        return 124, True
    return exit_status, False


# --- 5. Main loop ---

def xargs(template, stream, limits, args, runner=run_command, prompter=None):
    """Run the command template over everything in stream. Returns the exit status."""
    if prompter is None:
        prompter = Prompter(trace=args.trace, prompt=args.interactive)
    base = template_bytes(template, limits)
    records = read_records(stream, limits.null)
    state = BatchState(base)
    exit_status = 0
    data = None
    done = False
    # Only a command that actually ran ends the loop on an empty batch.
    ran = False

    try:
        while data is not None or not done:
            state.reset(base)
            queue = []

            # Read until something doesn't fit
            while True:
                if data is None:
                    data = next(records, None)
                    if data is None:
                        done = True
                        break
                queue.append(data)

                result = handle_entries(data, state, limits)
                if result is None:
                    data = None
                    continue
                if result is Outcome.EOF_STRING:
                    done = True
                data = result if isinstance(result, bytes) else None
                break

            if not state.entries:
                if data is not None:
                    raise XargsError("argument too long")
                if ran:
                    break
                if args.no_run_if_empty:
                    continue

            argv = assemble(template, queue, state, limits, base)
            if not prompter.confirm(argv):
                continue

            status = runner(argv, args.open_tty)
            ran = True
            exit_status, abort = classify_status(status, exit_status, argv)
            if abort:
                break
    finally:
        prompter.close()

    return exit_status


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"number must be > 0: '{value}'")
    return number


def non_negative_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'")
    if number < 0:
        raise argparse.ArgumentTypeError(f"number must be >= 0: '{value}'")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog=os.path.basename(sys.argv[0]),
        description="Run command line one or more times, appending arguments from stdin.",
        usage="%(prog)s [-0prt] [-s NUM] [-n NUM] [-E STR] COMMAND...",
    )
    delim = parser.add_mutually_exclusive_group()
    delim.add_argument('-0', dest='null', action='store_true',
                       help='each argument is NULL terminated, no whitespace or quote processing')
    delim.add_argument('-E', dest='eof_str', metavar='STR',
                       help='stop at line matching string')
    parser.add_argument('-n', '--max-args', dest='max_args', type=positive_int, metavar='NUM',
                        help='max number of arguments per command')
    parser.add_argument('-o', dest='open_tty', action='store_true',
                        help="open tty for COMMAND's stdin (default /dev/null)")
    parser.add_argument('-p', dest='interactive', action='store_true',
                        help='prompt for y/n from tty before running each command')
    parser.add_argument('-r', dest='no_run_if_empty', action='store_true',
                        help="don't run command with empty input (otherwise always run command once)")
    parser.add_argument('-s', dest='size', type=non_negative_int, metavar='NUM',
                        help='size in bytes per command')
    parser.add_argument('-t', dest='trace', action='store_true',
                        help='trace, print command line to stderr')
    parser.add_argument('command', nargs=argparse.REMAINDER,
                        help='command to run (default: echo)')
    return parser


def main(argv=None):
    """Parses arguments and runs the xargs loop over stdin."""
    program_name = os.path.basename(sys.argv[0])
    args = build_parser().parse_args(argv)

    template = [os.fsencode(arg) for arg in args.command] or [b'echo']
    try:
        limits = resolve_limits(args)
        exit_status = xargs(template, sys.stdin.buffer, limits, args)
    except XargsError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(exit_status)


if __name__ == "__main__":
    main()
