"""Rule evaluation — decides whether a job template joins a pipeline run.

Rules are scanned in declaration order and the first matching rule wins. A
template whose rules all miss is excluded (fail-closed).

Each rule is compiled into a tree of predicate variants:

    - ``EventPredicate``    — pipeline source is one of a set
    - ``BranchPredicate``   — ref name matches a regex
    - ``VariablePredicate`` — ``$VAR == "x"``, ``!=``, ``=~ /re/``, ``!~``, presence
    - ``ChangesPredicate``  — changed files intersect a set of globs
    - ``AllOf`` / ``AnyOf`` — conjunction / disjunction

``if:`` strings such as ``$CI_PIPELINE_SOURCE == "schedule" && $X =~ /^rc--/i``
are parsed once by a small recursive-descent parser into that tree. Nothing
is evaluated dynamically.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from pipewright.pipeline.errors import ConfigError, RuleEvaluationError
from pipewright.pipeline.models import (
    KNOWN_CONTEXT_FIELDS,
    EventSource,
    JobTemplate,
    RuleDefinition,
    TriggerContext,
    WhenPolicy,
)

logger = logging.getLogger("pipewright.pipeline.rules")


# ── Predicate Variants ───────────────────────────────────────────────────────


class Predicate(Protocol):
    def evaluate(self, scope: RuleScope) -> bool: ...


@dataclass(frozen=True)
class EventPredicate:
    sources: frozenset[EventSource]

    def evaluate(self, scope: RuleScope) -> bool:
        return scope.context.source in self.sources


@dataclass(frozen=True)
class BranchPredicate:
    pattern: re.Pattern

    def evaluate(self, scope: RuleScope) -> bool:
        ref = scope.lookup("CI_COMMIT_REF_NAME") or ""
        return self.pattern.search(ref) is not None


@dataclass(frozen=True)
class VariablePredicate:
    """Comparison of a variable against a literal, a regex or another variable."""

    name: str
    op: str  # "==", "!=", "=~", "!~", "present"
    value: str | None = None
    pattern: re.Pattern | None = None
    rhs_variable: str | None = None

    def evaluate(self, scope: RuleScope) -> bool:
        lhs = scope.lookup(self.name)
        if self.op == "present":
            return bool(lhs)
        if self.op in ("=~", "!~"):
            matched = lhs is not None and self.pattern.search(lhs) is not None  # type: ignore[union-attr]
            return matched if self.op == "=~" else not matched
        rhs = scope.lookup(self.rhs_variable) if self.rhs_variable else self.value
        equal = lhs == rhs
        return equal if self.op == "==" else not equal


@dataclass(frozen=True)
class ChangesPredicate:
    patterns: tuple[str, ...]

    def evaluate(self, scope: RuleScope) -> bool:
        changed = scope.context.changed_files
        if changed is None:
            # Diff unknown (schedules, new branches): changes filters pass
            return True
        return any(path_matches(path, self.patterns) for path in changed)


@dataclass(frozen=True)
class AllOf:
    items: tuple[Predicate, ...]

    def evaluate(self, scope: RuleScope) -> bool:
        return all(item.evaluate(scope) for item in self.items)


@dataclass(frozen=True)
class AnyOf:
    items: tuple[Predicate, ...]

    def evaluate(self, scope: RuleScope) -> bool:
        return any(item.evaluate(scope) for item in self.items)


# ── Evaluation Scope ─────────────────────────────────────────────────────────


@dataclass
class RuleScope:
    """Variable namespace a rule is evaluated against.

    Lookup precedence (highest first): pipeline variables from the trigger,
    predefined context fields, template variables, global variables.
    Referencing a name defined nowhere raises ``RuleEvaluationError``.
    """

    context: TriggerContext
    template_variables: dict[str, str] = field(default_factory=dict)
    global_variables: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._fields = self.context.context_fields()

    def lookup(self, name: str) -> str | None:
        if name in self.context.variables:
            return self.context.variables[name]
        if name in KNOWN_CONTEXT_FIELDS:
            return self._fields.get(name)
        if name in self.template_variables:
            return self.template_variables[name]
        if name in self.global_variables:
            return self.global_variables[name]
        raise RuleEvaluationError(name)


# ── Decisions ────────────────────────────────────────────────────────────────


class RuleOutcome(str, Enum):
    INCLUDED = "included"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class RuleDecision:
    """Result of evaluating a template's rules against a trigger."""

    outcome: RuleOutcome
    when: WhenPolicy | None = None
    allow_failure: bool | None = None
    variables: dict[str, str] = field(default_factory=dict)
    rule_index: int | None = None

    @property
    def included(self) -> bool:
        return self.outcome == RuleOutcome.INCLUDED


EXCLUDED = RuleDecision(outcome=RuleOutcome.EXCLUDED)


class RuleEvaluator:
    """Evaluates template rules against a trigger context. Pure; no side effects
    beyond logging."""

    def __init__(self, global_variables: dict[str, str] | None = None):
        self._global_variables = dict(global_variables or {})
        self._warned: set[str] = set()

    def evaluate(self, template: JobTemplate, context: TriggerContext) -> RuleDecision:
        """Return the decision for ``template`` under ``context``."""
        if template.rules is None:
            if template.when == WhenPolicy.NEVER:
                return EXCLUDED
            return RuleDecision(
                outcome=RuleOutcome.INCLUDED,
                when=template.when,
                allow_failure=template.allow_failure,
            )

        self._warn_unreachable(template)
        scope = RuleScope(
            context=context,
            template_variables=template.variables,
            global_variables=self._global_variables,
        )
        for idx, rule in enumerate(template.rules):
            try:
                matched = compile_rule(rule).evaluate(scope)
            except RuleEvaluationError as exc:
                logger.warning(
                    "Job '%s' rule #%d treated as non-match: %s", template.name, idx, exc
                )
                continue
            if not matched:
                continue

            when = rule.when or template.when
            if when == WhenPolicy.NEVER:
                logger.debug("Job '%s' excluded by rule #%d (when: never)", template.name, idx)
                return EXCLUDED
            allow_failure = rule.allow_failure
            if allow_failure is None:
                allow_failure = template.allow_failure
            logger.debug("Job '%s' included by rule #%d (when: %s)", template.name, idx, when.value)
            return RuleDecision(
                outcome=RuleOutcome.INCLUDED,
                when=when,
                allow_failure=allow_failure,
                variables=dict(rule.variables),
                rule_index=idx,
            )

        return EXCLUDED

    def _warn_unreachable(self, template: JobTemplate) -> None:
        if template.name in self._warned:
            return
        self._warned.add(template.name)
        for idx in find_unreachable_rules(template.rules or []):
            logger.warning(
                "Job '%s' rule #%d is unreachable: an earlier rule always matches",
                template.name,
                idx,
            )


def find_unreachable_rules(rules: list[RuleDefinition]) -> list[int]:
    """Indices of rules that follow an unconditional rule."""
    for idx, rule in enumerate(rules):
        if rule.is_unconditional:
            return list(range(idx + 1, len(rules)))
    return []


# ── Rule Compilation ─────────────────────────────────────────────────────────


_ALWAYS = AllOf(())


def compile_rule(rule: RuleDefinition) -> Predicate:
    """Build the predicate tree for one rule (cached per rule)."""
    return _compile_rule_cached(rule.if_, _freeze(rule.event), rule.branch, _freeze(rule.changes))


@functools.lru_cache(maxsize=1024)
def _compile_rule_cached(
    if_expr: str | None,
    events: tuple[EventSource, ...] | None,
    branch: str | None,
    changes: tuple[str, ...] | None,
) -> Predicate:
    parts: list[Predicate] = []
    if if_expr is not None:
        parts.append(compile_expression(if_expr))
    if events is not None:
        parts.append(EventPredicate(frozenset(events)))
    if branch is not None:
        try:
            parts.append(BranchPredicate(re.compile(branch)))
        except re.error as exc:
            msg = f"Invalid branch pattern {branch!r}: {exc}"
            raise ConfigError(msg) from exc
    if changes is not None:
        parts.append(ChangesPredicate(changes))
    if not parts:
        return _ALWAYS
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))


def _freeze(values: list | None) -> tuple | None:
    return tuple(values) if values is not None else None


# ── Expression Parser ────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>&&|\|\||==|!=|=~|!~)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<var>\$\{?[A-Za-z_][A-Za-z0-9_]*\}?)
  | (?P<dstring>"(?:\\.|[^"\\])*")
  | (?P<sstring>'(?:\\.|[^'\\])*')
  | (?P<null>null\b)
    """,
    re.VERBOSE,
)

_REGEX_LITERAL_RE = re.compile(r"/((?:\\.|[^/\\])*)/([a-z]*)")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(expr: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(expr):
        # Regex literals are only legal right after a match operator
        if tokens and tokens[-1].value in ("=~", "!~"):
            stripped = len(expr[pos:]) - len(expr[pos:].lstrip())
            m = _REGEX_LITERAL_RE.match(expr, pos + stripped)
            if m:
                tokens.append(_Token("regex", m.group(0), m.start()))
                pos = m.end()
                continue
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            msg = f"Unexpected character {expr[pos]!r} at position {pos} in rule {expr!r}"
            raise ConfigError(msg)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(0), pos))
        pos = m.end()
    return tokens


class _Parser:
    """Recursive-descent parser: ``or := and ('||' and)*``,
    ``and := atom ('&&' atom)*``, ``atom := '(' or ')' | comparison``."""

    def __init__(self, expr: str):
        self._expr = expr
        self._tokens = _tokenize(expr)
        self._pos = 0

    def parse(self) -> Predicate:
        if not self._tokens:
            msg = "Empty rule expression"
            raise ConfigError(msg)
        node = self._parse_or()
        if self._pos != len(self._tokens):
            self._error(f"unexpected token {self._tokens[self._pos].value!r}")
        return node

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            self._error("unexpected end of expression")
        self._pos += 1
        return tok  # type: ignore[return-value]

    def _error(self, message: str) -> None:
        msg = f"Invalid rule expression {self._expr!r}: {message}"
        raise ConfigError(msg)

    def _parse_or(self) -> Predicate:
        items = [self._parse_and()]
        while (tok := self._peek()) is not None and tok.value == "||":
            self._pos += 1
            items.append(self._parse_and())
        return items[0] if len(items) == 1 else AnyOf(tuple(items))

    def _parse_and(self) -> Predicate:
        items = [self._parse_atom()]
        while (tok := self._peek()) is not None and tok.value == "&&":
            self._pos += 1
            items.append(self._parse_atom())
        return items[0] if len(items) == 1 else AllOf(tuple(items))

    def _parse_atom(self) -> Predicate:
        tok = self._peek()
        if tok is not None and tok.kind == "lparen":
            self._pos += 1
            node = self._parse_or()
            closing = self._next()
            if closing.kind != "rparen":
                self._error(f"expected ')' but found {closing.value!r}")
            return node
        return self._parse_comparison()

    def _parse_comparison(self) -> Predicate:
        lhs = self._next()
        op_tok = self._peek()
        if op_tok is None or op_tok.kind != "op" or op_tok.value in ("&&", "||"):
            if lhs.kind != "var":
                self._error(f"expected a variable but found {lhs.value!r}")
            return VariablePredicate(name=_var_name(lhs.value), op="present")

        self._pos += 1
        op = op_tok.value
        rhs = self._next()

        if op in ("=~", "!~"):
            if lhs.kind != "var":
                self._error(f"left side of {op} must be a variable")
            if rhs.kind != "regex":
                self._error(f"right side of {op} must be a /regex/ literal")
            return VariablePredicate(name=_var_name(lhs.value), op=op, pattern=_compile_regex(rhs.value))

        # == / != : allow the variable on either side
        if lhs.kind != "var" and rhs.kind == "var":
            lhs, rhs = rhs, lhs
        if lhs.kind != "var":
            self._error(f"comparison {op} needs at least one variable")
        if rhs.kind == "var":
            return VariablePredicate(name=_var_name(lhs.value), op=op, rhs_variable=_var_name(rhs.value))
        if rhs.kind == "null":
            return VariablePredicate(name=_var_name(lhs.value), op=op, value=None)
        if rhs.kind in ("dstring", "sstring"):
            return VariablePredicate(name=_var_name(lhs.value), op=op, value=_unquote(rhs.value))
        self._error(f"unexpected operand {rhs.value!r}")
        raise AssertionError  # unreachable


@functools.lru_cache(maxsize=1024)
def compile_expression(expr: str) -> Predicate:
    """Compile an ``if:`` expression into a predicate tree.

    Raises:
        ConfigError: If the expression is malformed.
    """
    return _Parser(expr).parse()


def _var_name(token: str) -> str:
    return token.lstrip("$").strip("{}")


def _unquote(token: str) -> str:
    body = token[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _compile_regex(literal: str) -> re.Pattern:
    m = _REGEX_LITERAL_RE.fullmatch(literal)
    if not m:
        msg = f"Invalid regex literal {literal!r}"
        raise ConfigError(msg)
    flags = 0
    for flag in m.group(2):
        if flag not in _REGEX_FLAGS:
            msg = f"Unsupported regex flag {flag!r} in {literal!r}"
            raise ConfigError(msg)
        flags |= _REGEX_FLAGS[flag]
    try:
        return re.compile(m.group(1).replace("\\/", "/"), flags)
    except re.error as exc:
        msg = f"Invalid regex {literal!r}: {exc}"
        raise ConfigError(msg) from exc


# ── Path Matching ────────────────────────────────────────────────────────────


def path_matches(path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    """Match a repository path against glob patterns.

    ``*`` and ``?`` stay inside one path segment; ``**`` spans directories and
    ``**/`` also matches zero of them, so ``**/*.rs`` matches ``lib.rs`` and
    ``a/**/b`` matches ``a/b``. ``[abc]`` classes and ``{x,y}`` alternatives
    are supported.
    """
    path = path.lstrip("/")
    return any(_glob_regex(pattern.lstrip("/")).fullmatch(path) for pattern in patterns)


@functools.lru_cache(maxsize=1024)
def _glob_regex(pattern: str) -> re.Pattern:
    return re.compile(_translate_glob(pattern), re.DOTALL)


def _translate_glob(pattern: str) -> str:
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:[^/]*/)*")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif c == "*":
            parts.append("[^/]*")
            i += 1
        elif c == "?":
            parts.append("[^/]")
            i += 1
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            j = pattern.find("]", j)
            if j == -1:
                parts.append(re.escape(c))
                i += 1
                continue
            body = pattern[i + 1 : j].replace("\\", "\\\\")
            if body[0] in "!^":
                body = "^" + body[1:]
            parts.append(f"[{body}]")
            i = j + 1
        elif c == "{":
            j = pattern.find("}", i)
            if j == -1:
                parts.append(re.escape(c))
                i += 1
                continue
            alternatives = pattern[i + 1 : j].split(",")
            parts.append("(?:" + "|".join(_translate_glob(alt) for alt in alternatives) + ")")
            i = j + 1
        else:
            parts.append(re.escape(c))
            i += 1
    return "".join(parts)
