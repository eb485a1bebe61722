"""Process label enrichment.

Turns raw process records into human-readable labels such as
``uvicorn atlas.main:app (port 8080)``. Rules are tried in priority order
(higher first, ties keep load order) and the first rule whose declared
matchers all succeed wins.

Templates may contain these placeholders:

    {argv_after:TOKEN|first}      argument after the first argv element containing TOKEN
    {argv_value:FLAG|default:D}   value of FLAG=value or FLAG value, else D
    {argv_match_basename}         basename of the first path-like or script argument
    {cwd_basename}                basename of the working directory
    {port}                        value of --port/-p/-P or --port=VALUE
    {name}                        raw process name

Anything else inside braces is kept as literal text.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath

import structlog

from processscope.models import ProcessRecord

log = structlog.get_logger()

SCRIPT_EXTENSIONS = (".py", ".js", ".ts", ".rb")
PORT_FLAGS = ("--port", "-p", "-P")

_ARGV_AFTER = re.compile(r"argv_after:([^|]+)\|first")
_ARGV_VALUE = re.compile(r"argv_value:([^|]+)\|default:(.+)")
_SPACES = re.compile(r" {2,}")


@dataclass(frozen=True)
class EnrichmentRule:
    """A matcher set plus the template used to label matching processes.

    Matchers left as None always succeed. ``name`` is only used in logs.
    """

    name: str
    template: str
    process_name: str | None = None
    argv_contains: str | None = None
    argv_regex: str | None = None
    priority: int = 0
    _compiled: re.Pattern | None = field(default=None, init=False, repr=False, compare=False)
    _regex_invalid: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.argv_regex is None:
            return
        try:
            object.__setattr__(self, "_compiled", re.compile(self.argv_regex, re.IGNORECASE))
        except re.error as e:
            log.warning("enrichment_regex_invalid", rule=self.name, pattern=self.argv_regex, error=str(e))
            object.__setattr__(self, "_regex_invalid", True)

    def matches(self, process: ProcessRecord) -> bool:
        """True if every declared matcher accepts the process."""
        if self.process_name is not None:
            wanted = self.process_name.lower()
            exe_name = (
                PurePosixPath(process.executable_path).name
                if process.executable_path
                else process.name
            )
            if process.name.lower() != wanted and exe_name.lower() != wanted:
                return False

        joined = " ".join(process.arguments)

        if self.argv_contains is not None and self.argv_contains.lower() not in joined.lower():
            return False

        if self.argv_regex is not None:
            if self._regex_invalid or self._compiled is None:
                return False
            if self._compiled.search(joined) is None:
                return False

        return True

    def label(self, process: ProcessRecord) -> str | None:
        """Resolved label if this rule matches, otherwise None."""
        if not self.matches(process):
            return None
        return resolve_template(self.template, process)


# ─────────────────────────────────────────────────────────────────────────────
# Template resolution
# ─────────────────────────────────────────────────────────────────────────────


def _argv_after(args: Sequence[str], token: str) -> str:
    for i, arg in enumerate(args):
        if token in arg:
            return args[i + 1] if i + 1 < len(args) else ""
    return ""


def _argv_value(args: Sequence[str], flag: str, default: str) -> str:
    prefix = flag + "="
    for i, arg in enumerate(args):
        if arg.startswith(prefix):
            return arg[len(prefix) :]
        if arg == flag and i + 1 < len(args):
            return args[i + 1]
    return default


def _argv_match_basename(process: ProcessRecord) -> str:
    for arg in process.arguments[1:]:
        if "/" in arg or arg.endswith(SCRIPT_EXTENSIONS):
            return PurePosixPath(arg).name
    return process.name


def _cwd_basename(process: ProcessRecord) -> str:
    if not process.working_directory:
        return ""
    return PurePosixPath(process.working_directory).name


def _port(args: Sequence[str]) -> str:
    for i, arg in enumerate(args):
        if arg in PORT_FLAGS and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith("--port="):
            return arg[len("--port=") :]
    return ""


def _resolve_placeholder(body: str, process: ProcessRecord) -> str | None:
    """Value for a placeholder body (text between braces), or None if not a placeholder."""
    args = process.arguments
    if body == "name":
        return process.name
    if body == "port":
        return _port(args)
    if body == "cwd_basename":
        return _cwd_basename(process)
    if body == "argv_match_basename":
        return _argv_match_basename(process)

    m = _ARGV_AFTER.fullmatch(body)
    if m:
        return _argv_after(args, m.group(1))

    m = _ARGV_VALUE.fullmatch(body)
    if m:
        return _argv_value(args, m.group(1), m.group(2))

    return None


def resolve_template(template: str, process: ProcessRecord) -> str:
    """Expand placeholders in a single left-to-right pass.

    Substituted values are emitted verbatim and never re-scanned, so argv text
    that happens to look like ``{name}`` stays literal.
    """
    out: list[str] = []
    i = 0
    n = len(template)
    while i < n:
        start = template.find("{", i)
        if start < 0:
            out.append(template[i:])
            break
        out.append(template[i:start])
        end = template.find("}", start + 1)
        if end < 0:
            out.append(template[start:])
            break
        value = _resolve_placeholder(template[start + 1 : end], process)
        if value is None:
            # Not a placeholder: keep the brace and rescan from the next char
            out.append("{")
            i = start + 1
        else:
            out.append(value)
            i = end + 1

    result = "".join(out).replace("()", "")
    result = _SPACES.sub(" ", result).strip()
    return result or process.name


# ─────────────────────────────────────────────────────────────────────────────
# Enricher
# ─────────────────────────────────────────────────────────────────────────────


class ProcessEnricher:
    """Labels processes using an ordered rule list.

    Immutable after construction, so one instance can be shared across tiers
    without locking.
    """

    def __init__(self, rules: Iterable[EnrichmentRule]) -> None:
        # sorted() is stable: equal priorities keep load order
        self._rules: tuple[EnrichmentRule, ...] = tuple(
            sorted(rules, key=lambda rule: -rule.priority)
        )

    @property
    def rules(self) -> tuple[EnrichmentRule, ...]:
        """Rules in evaluation order."""
        return self._rules

    def enrich(self, process: ProcessRecord) -> str | None:
        """Label from the first matching rule, or None."""
        for rule in self._rules:
            label = rule.label(process)
            if label is not None:
                return label
        return None

    def enrich_batch(self, processes: Iterable[ProcessRecord]) -> dict[int, str]:
        """Labels keyed by pid. Unmatched processes are omitted."""
        results: dict[int, str] = {}
        for process in processes:
            label = self.enrich(process)
            if label is not None:
                results[process.pid] = label
        return results

    @classmethod
    def with_defaults(cls) -> ProcessEnricher:
        return cls(BUILTIN_RULES)


# ─────────────────────────────────────────────────────────────────────────────
# Built-in rules for common developer processes
# ─────────────────────────────────────────────────────────────────────────────

BUILTIN_RULES: tuple[EnrichmentRule, ...] = (
    # Python
    EnrichmentRule(
        name="python-uvicorn",
        process_name="python3",
        argv_contains="uvicorn",
        template="uvicorn {argv_after:uvicorn|first} (port {port})",
    ),
    EnrichmentRule(
        name="python-gunicorn",
        process_name="python3",
        argv_contains="gunicorn",
        template="gunicorn {argv_after:gunicorn|first}",
    ),
    EnrichmentRule(
        name="python-flask",
        process_name="python3",
        argv_contains="flask",
        template="Flask {cwd_basename}",
    ),
    EnrichmentRule(
        name="python-django",
        process_name="python3",
        argv_contains="manage.py",
        template="Django {cwd_basename}",
    ),
    EnrichmentRule(
        name="python-celery",
        process_name="python3",
        argv_contains="celery",
        template="Celery {argv_after:celery|first}",
    ),
    EnrichmentRule(
        name="python-jupyter",
        process_name="python3",
        argv_contains="jupyter",
        template="Jupyter {argv_after:jupyter|first}",
    ),
    EnrichmentRule(
        name="python-generic",
        process_name="python3",
        template="Python {argv_match_basename}",
    ),
    # Node.js
    EnrichmentRule(
        name="node-next",
        process_name="node",
        argv_contains="next",
        template="Next.js {cwd_basename}",
    ),
    EnrichmentRule(
        name="node-vite",
        process_name="node",
        argv_contains="vite",
        template="Vite {cwd_basename}",
    ),
    EnrichmentRule(
        name="node-webpack",
        process_name="node",
        argv_contains="webpack",
        template="Webpack {cwd_basename}",
    ),
    EnrichmentRule(
        name="node-express",
        process_name="node",
        argv_contains="express",
        template="Express {cwd_basename} (port {port})",
    ),
    EnrichmentRule(
        name="node-generic",
        process_name="node",
        template="Node {argv_match_basename}",
    ),
    # Ruby
    EnrichmentRule(
        name="ruby-rails",
        process_name="ruby",
        argv_contains="rails",
        template="Rails {cwd_basename}",
    ),
    EnrichmentRule(
        name="ruby-puma",
        process_name="ruby",
        argv_contains="puma",
        template="Puma {cwd_basename} (port {port})",
    ),
    # Go
    EnrichmentRule(
        name="go-run",
        process_name="go",
        argv_contains="run",
        template="Go {argv_after:run|first}",
    ),
    # Docker
    EnrichmentRule(
        name="docker-desktop",
        process_name="com.docker.backend",
        template="Docker Desktop",
    ),
    # SSH
    EnrichmentRule(
        name="ssh-session",
        process_name="ssh",
        template="SSH {argv_after:ssh|first}",
    ),
    # Xcode / Swift
    EnrichmentRule(
        name="xcodebuild",
        process_name="xcodebuild",
        template="Xcode Build {cwd_basename}",
    ),
    EnrichmentRule(
        name="swift-build",
        process_name="swift",
        argv_contains="build",
        template="Swift Build {cwd_basename}",
    ),
)
