#!/usr/bin/env python3
"""
Name: phargs
Description: run a command for every combination of comma separated lists
Author: phargs contributors
License: perl

Each -w option supplies one comma separated list. The command given after
the options is run once per combination of the lists (the last list varies
fastest), with placeholders replaced by the current values:

    {N}   the value taken from the N-th list (counting from 0)
    {}    the same as {0}; only allowed when there is a single list

A token written as [...] is expanded in place to one token per value of
the list(s) it refers to, e.g. "cat [{}.txt]" with -w a,b runs
"cat a.txt b.txt". Execution stops at the first command that fails, and
its exit status becomes the exit status of phargs.
"""

import sys
import os
import re
import math
import shlex
import signal
import itertools
import subprocess

# Exit codes
EX_SUCCESS = 0
EX_FAILURE = 1
EX_USAGE = 2
EX_NOEXEC = 126
EX_NOTFOUND = 127
EX_SIGNAL_BASE = 128

# Matches "{}" and "{N}".
PLACEHOLDER = re.compile(r'\{(\d*)\}')


class PhargsError(Exception):
    """Base class for every error phargs reports before exiting."""
    exit_code = EX_USAGE


class ConfigError(PhargsError):
    """The options, lists or template are unusable; nothing has run yet."""


class UsageError(ConfigError):
    """The command line itself could not be parsed."""


class EmptyListError(ConfigError):
    def __init__(self, raw):
        super().__init__(f"empty argument list: '{raw}'")
        self.raw = raw


class SubstitutionError(PhargsError):
    """A placeholder refers to a list that was never given."""
    def __init__(self, index, size):
        super().__init__(
            f"placeholder {{{index}}} out of range: "
            f"{size} argument list(s) given")
        self.index = index
        self.size = size


class ExecutionError(PhargsError):
    """A command could not be started at all."""
    def __init__(self, command, reason, exit_code):
        super().__init__(f"{shlex.join(command)}: {reason}")
        self.command = command
        self.exit_code = exit_code


def parse_list(raw):
    """
    Splits a comma separated string into a tuple of values.
    Surrounding whitespace is stripped and empty values are dropped.
    """
    values = tuple(token.strip() for token in raw.split(','))
    values = tuple(value for value in values if value)
    if not values:
        raise EmptyListError(raw)
    return values


class Combinations:
    """
    Every selection of one value per list, in odometer order.

    The sequence is produced lazily and starts over each time it is
    iterated, so large products are never held in memory.
    """
    def __init__(self, lists):
        self.lists = tuple(tuple(values) for values in lists)

    def __iter__(self):
        return itertools.product(*self.lists)

    def __len__(self):
        return math.prod(len(values) for values in self.lists)


def placeholder_indices(token):
    """Returns the list index of each placeholder in token, in order."""
    return [int(n) if n else 0 for n in PLACEHOLDER.findall(token)]


def has_placeholder(token):
    return PLACEHOLDER.search(token) is not None


def is_array_token(token):
    return (len(token) >= 2 and token[0] == '[' and token[-1] == ']'
            and has_placeholder(token))


def render_token(token, values):
    """
    Replaces every placeholder in token with its value. `values` is
    indexed by list number; a tuple or a dict both work.
    """
    def replace(match):
        index = int(match.group(1) or 0)
        try:
            return values[index]
        except (IndexError, KeyError):
            raise SubstitutionError(index, len(values)) from None

    return PLACEHOLDER.sub(replace, token)


class Literal(str):
    """A token that is final and must not be scanned for placeholders."""


def substitute(template, values):
    """Renders the whole template for one combination of values."""
    return [token if isinstance(token, Literal) else render_token(token, values)
            for token in template]


def expand_arrays(template, lists):
    """
    Replaces each [...] argument by one token per combination of the
    lists it refers to. The command name itself is never expanded.
    Expanded tokens are returned as Literal so values are never rescanned.
    """
    expanded = list(template[:1])
    for token in template[1:]:
        if not is_array_token(token):
            expanded.append(token)
            continue

        inner = token[1:-1]
        indices = sorted(set(placeholder_indices(inner)))
        for index in indices:
            if index >= len(lists):
                raise SubstitutionError(index, len(lists))

        for combo in itertools.product(*(lists[i] for i in indices)):
            expanded.append(Literal(render_token(inner, dict(zip(indices, combo)))))
    return expanded


def check_template(template, lists):
    """Rejects templates that cannot be rendered unambiguously."""
    if not template:
        raise ConfigError("command is empty")
    if len(lists) != 1 and any('{}' in token for token in template):
        raise ConfigError(
            f"'{{}}' is ambiguous with {len(lists)} argument lists; "
            f"use {{0}} to {{{len(lists) - 1}}} instead")


def exit_status(returncode):
    """
    Maps a child's return code to the status phargs exits with.
    A negative code means the child was killed by that signal.
    """
    if returncode < 0:
        return min(EX_SIGNAL_BASE - returncode, 255)
    return min(returncode, 255)


class Config:
    """Everything a run needs, as read from the command line."""
    def __init__(self, lists, template, dry_run=False, trace=False):
        self.lists = [tuple(values) for values in lists]
        self.template = list(template)
        self.dry_run = dry_run
        self.trace = trace


class RunOutcome:
    """The result of one generated command."""
    def __init__(self, code, executed):
        self.code = code
        self.executed = executed

    @property
    def ok(self):
        return self.code == 0

    def __repr__(self):
        return f"RunOutcome(code={self.code}, executed={self.executed})"


class Runner:
    """
    Drives a run: renders each combination, then prints it (dry run) or
    runs it and waits for it. Stops at the first failure.

    `state` moves through 'pending', 'printing' or 'spawning', and ends as
    'finished' or 'halted'.
    """
    def __init__(self, config, program_name='phargs'):
        check_template(config.template, config.lists)
        self.config = config
        self.program_name = program_name
        self.state = 'pending'
        self.outcomes = []

    def commands(self):
        """Yields the concrete argv of every command, in run order."""
        template = expand_arrays(self.config.template, self.config.lists)

        # Without a placeholder every combination is the same command.
        if not any(has_placeholder(token) for token in template
                   if not isinstance(token, Literal)):
            yield template
            return

        for values in Combinations(self.config.lists):
            yield substitute(template, values)

    def run_one(self, command):
        if self.config.dry_run:
            self.state = 'printing'
            print(shlex.join(command))
            return RunOutcome(EX_SUCCESS, executed=False)

        self.state = 'spawning'
        if self.config.trace:
            print(f"exec: {shlex.join(command)}", file=sys.stderr)
        # Flush so our own output never lands after the child's.
        sys.stdout.flush()

        try:
            proc = subprocess.run(command)
        except FileNotFoundError:
            raise ExecutionError(command, "No such file or directory", EX_NOTFOUND)
        except PermissionError:
            raise ExecutionError(command, "Permission denied", EX_NOEXEC)
        except OSError as e:
            raise ExecutionError(command, e.strerror or str(e), EX_NOEXEC)

        if proc.returncode < 0:
            print(f"{self.program_name}: {shlex.join(command)}: "
                  f"terminated by signal {-proc.returncode}", file=sys.stderr)
        return RunOutcome(exit_status(proc.returncode), executed=True)

    def run(self):
        """Runs every command in order and returns the overall exit status."""
        try:
            for command in self.commands():
                try:
                    outcome = self.run_one(command)
                except ExecutionError as e:
                    self.outcomes.append(RunOutcome(e.exit_code, executed=False))
                    raise

                self.outcomes.append(outcome)
                if not outcome.ok:
                    self.state = 'halted'
                    return outcome.code
                self.state = 'pending'
        except PhargsError:
            self.state = 'halted'
            raise

        self.state = 'finished'
        return EX_SUCCESS


def usage(program_name, file=None):
    file = file or sys.stderr
    print(f"usage: {program_name} [-n] [-t] -w list [-w list ...] [--] "
          f"command [argument ...]", file=file)


def parse_args(args, program_name='phargs'):
    """Turns the command line arguments into a Config."""
    args = list(args)
    raw_lists = []
    dry_run = False
    trace = False

    # --- 1. Options ---
    while args and args[0].startswith('-'):
        arg = args.pop(0)

        if arg == '--':
            break
        elif arg in ('-n', '--dry-run'):
            dry_run = True
        elif arg in ('-t', '--trace'):
            trace = True
        elif arg in ('-h', '--help'):
            usage(program_name, file=sys.stdout)
            sys.exit(EX_SUCCESS)
        elif arg in ('-w', '--wlist'):
            if not args:
                raise UsageError(f"option requires an argument -- '{arg.lstrip('-')}'")
            raw_lists.append(args.pop(0))
        elif arg.startswith('--wlist='):
            raw_lists.append(arg[len('--wlist='):])
        elif arg.startswith('-w'):
            # Handles the value attached to the flag, e.g. -wa,b
            raw_lists.append(arg[2:])
        else:
            raise UsageError(f"invalid option: {arg}")

    # --- 2. Lists and template ---
    if not raw_lists:
        raise UsageError("at least one -w list is required")

    lists = [parse_list(raw) for raw in raw_lists]
    check_template(args, lists)
    return Config(lists, args, dry_run=dry_run, trace=trace)


def main(argv=None):
    """Parses arguments, runs every combination and exits with the result."""
    program_name = os.path.basename(sys.argv[0])
    args = sys.argv[1:] if argv is None else argv

    try:
        config = parse_args(args, program_name)
        status = Runner(config, program_name).run()
    except UsageError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        usage(program_name)
        sys.exit(EX_USAGE)
    except PhargsError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        sys.exit(EX_SIGNAL_BASE + signal.SIGINT)
    except BrokenPipeError:
        sys.stderr.close() # Reader went away, e.g. piped into head
        sys.exit(EX_FAILURE)

    sys.exit(status)


if __name__ == "__main__":
    main()
