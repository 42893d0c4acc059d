"""
Expression Parser

Parses the textual rule language into the same RuleAst that structured
condition/action lists produce, and renders structured rules back to text.

    group_title contains "News" AND not channel_name matches "^Test"
        SET group_title = "NEWS", label:region = "uk"

Grammar:
    rule       := expr ["SET" assignment ("," assignment)*] ["DELETE" TARGET ("," TARGET)*]
    expr       := term ((AND|OR) term)*
    term       := "(" expr ")" | condition
    condition  := [not] [case_sensitive] FIELD [not] [case_sensitive] OPERATOR STRING
    assignment := TARGET ("=" | "?=" | "+=" | "-=") STRING | TARGET "=" null

AND/OR chain flat left-to-right; there is no precedence between them.
"field = null" and "DELETE field" both clear a field. Names may contain
inner hyphens (tvg-chno).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from field_catalog import DEFAULT_LOGO_FIELD, STREAM
from rule_errors import ParseError, UnsupportedExpressionError
from rule_schema import (
    Action,
    ActionType,
    Condition,
    ConditionGroup,
    LogicalOperator,
    RuleAst,
)


logger = logging.getLogger(__name__)


LOGO_PREFIX = "@logo:"
LABEL_PREFIX = "label:"

# Token kinds
WORD = "word"
STRING = "string"
LPAREN = "("
RPAREN = ")"
COMMA = ","
ASSIGN = "assign"
END = "end"

ASSIGN_OPS = ("?=", "+=", "-=", "=")
CONNECTORS = {"AND": "AND", "OR": "OR", "ALL": "AND", "ANY": "OR"}
MODIFIERS = ("NOT", "CASE_SENSITIVE")
ACTION_KEYWORDS = ("SET", "DELETE")
NULL = "null"

_WORD_CHARS = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.:")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int

    @property
    def upper(self) -> str:
        return self.text.upper() if self.kind == WORD else ""


# =============================================================================
# Tokenizer
# =============================================================================

def tokenize(text: str) -> list[Token]:
    """
    Split an expression into tokens.

    Raises:
        ParseError: On an unterminated string or an unexpected character
    """
    tokens = []
    i = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch in "\"'":
            start = i
            quote = ch
            i += 1
            chars = []
            while i < length and text[i] != quote:
                if text[i] == "\\" and i + 1 < length:
                    i += 1
                chars.append(text[i])
                i += 1
            if i >= length:
                raise ParseError("Unterminated string literal", position=start, token=quote)
            tokens.append(Token(STRING, "".join(chars), start))
            i += 1
            continue
        if ch == "(":
            tokens.append(Token(LPAREN, ch, i))
            i += 1
            continue
        if ch == ")":
            tokens.append(Token(RPAREN, ch, i))
            i += 1
            continue
        if ch == ",":
            tokens.append(Token(COMMA, ch, i))
            i += 1
            continue
        op = next((op for op in ASSIGN_OPS if text.startswith(op, i)), None)
        if op:
            tokens.append(Token(ASSIGN, op, i))
            i += len(op)
            continue
        if ch in _WORD_CHARS:
            start = i
            while i < length and (text[i] in _WORD_CHARS or _inner_hyphen(text, i)):
                i += 1
            tokens.append(Token(WORD, text[start:i], start))
            continue
        raise ParseError(f"Unexpected character '{ch}'", position=i, token=ch)
    tokens.append(Token(END, "", length))
    return tokens


def _inner_hyphen(text: str, i: int) -> bool:
    # "-" joins two word characters; "-=" stays an operator
    return text[i] == "-" and i + 1 < len(text) and text[i + 1] in _WORD_CHARS


# =============================================================================
# Parser
# =============================================================================

class ExpressionParser:
    """
    Recursive-descent parser over the token stream.

    After parse(), `references` lists every field and action target seen as
    (kind, name, position) so the validator can point at them.
    """

    def __init__(self, text: str):
        self.text = text or ""
        self.tokens: list[Token] = []
        self.pos = 0
        self.references: list[tuple[str, str, int]] = []

    def parse(self) -> RuleAst:
        self.tokens = tokenize(self.text)
        self.pos = 0
        self.references = []

        if self._peek().kind == END:
            return RuleAst()

        if self._peek().upper in ACTION_KEYWORDS:
            group = ConditionGroup()
        else:
            group = self._parse_expr()

        actions = []
        token = self._peek()
        if token.upper == "SET":
            self._advance()
            actions.append(self._parse_assignment())
            while self._peek().kind == COMMA:
                self._advance()
                actions.append(self._parse_assignment())
            token = self._peek()
        if token.upper == "DELETE":
            self._advance()
            actions.append(self._parse_clear())
            while self._peek().kind == COMMA:
                self._advance()
                actions.append(self._parse_clear())
            token = self._peek()

        if token.kind == RPAREN:
            raise ParseError("Unmatched closing parenthesis", position=token.position, token=")")
        if token.kind != END:
            raise ParseError(f"Unexpected token '{token.text}'", position=token.position,
                             token=token.text)
        return RuleAst(conditions=group, actions=tuple(actions))

    # -------------------------------------------------------------------------
    # Token helpers
    # -------------------------------------------------------------------------

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != END:
            self.pos += 1
        return token

    def _expect(self, kind: str, what: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            found = token.text or "end of expression"
            raise ParseError(f"Expected {what}, found '{found}'", position=token.position,
                             token=token.text)
        return self._advance()

    # -------------------------------------------------------------------------
    # Conditions
    # -------------------------------------------------------------------------

    def _parse_expr(self) -> ConditionGroup:
        entries = [self._parse_term()]
        while self._peek().upper in CONNECTORS:
            connector = CONNECTORS[self._advance().upper]
            entries[-1] = _with_logical(entries[-1], connector)
            entries.append(self._parse_term())
        return ConditionGroup(entries=tuple(entries))

    def _parse_term(self):
        token = self._peek()
        if token.kind == LPAREN:
            self._advance()
            if self._peek().kind == RPAREN:
                raise ParseError("Empty parentheses", position=token.position, token="(")
            group = self._parse_expr()
            if self._peek().kind != RPAREN:
                raise ParseError("Unmatched opening parenthesis", position=token.position,
                                 token="(")
            self._advance()
            return group
        if token.kind == RPAREN:
            raise ParseError("Unmatched closing parenthesis", position=token.position, token=")")
        return self._parse_condition()

    def _parse_condition(self) -> Condition:
        negate, case_sensitive = self._parse_modifiers(False, False)

        field_token = self._expect(WORD, "field name")
        if field_token.upper in CONNECTORS or field_token.upper in ACTION_KEYWORDS:
            raise ParseError(f"Expected field name, found keyword '{field_token.text}'",
                             position=field_token.position, token=field_token.text)
        self.references.append(("field", field_token.text, field_token.position))

        negate, case_sensitive = self._parse_modifiers(negate, case_sensitive)

        operator_token = self._expect(WORD, "operator")
        value_token = self._expect(STRING, "quoted value")
        return Condition(
            field=field_token.text,
            operator=operator_token.text.lower(),
            value=value_token.text,
            case_sensitive=case_sensitive,
            negate=negate,
        )

    def _parse_modifiers(self, negate: bool, case_sensitive: bool) -> tuple[bool, bool]:
        # A modifier is only a modifier when another word follows it.
        while self._peek().upper in MODIFIERS and self.tokens[self.pos + 1].kind == WORD:
            word = self._advance().upper
            if word == "NOT":
                negate = not negate
            else:
                case_sensitive = True
        return negate, case_sensitive

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    def _parse_assignment(self) -> Action:
        target_token = self._expect(WORD, "assignment target")
        op_token = self._expect(ASSIGN, "assignment operator")
        if op_token.text == "=" and self._peek().kind == WORD and self._peek().text.lower() == NULL:
            self._advance()
            return self._clear_action(target_token)
        value_token = self._expect(STRING, "quoted value")
        target = target_token.text
        value = value_token.text
        op = op_token.text

        if target.lower().startswith(LABEL_PREFIX):
            key = target[len(LABEL_PREFIX):]
            if op != "=":
                raise ParseError(f"Labels only support '=', found '{op}'",
                                 position=op_token.position, token=op)
            if not key:
                raise ParseError("Label target requires a key (label:<key>)",
                                 position=target_token.position, token=target)
            return Action(ActionType.SET_LABEL.value, None, {"key": key, "value": value})

        self.references.append(("target", target, target_token.position))

        if op == "=":
            if value.startswith(LOGO_PREFIX):
                return Action(ActionType.SET_LOGO.value, target, value[len(LOGO_PREFIX):])
            return Action(ActionType.SET_VALUE.value, target, value)
        if op == "?=":
            return Action(ActionType.SET_DEFAULT_IF_EMPTY.value, target, value)
        transform = "append" if op == "+=" else "remove"
        return Action(ActionType.TRANSFORM_VALUE.value, target,
                      {"transform": transform, "value": value})

    def _parse_clear(self) -> Action:
        return self._clear_action(self._expect(WORD, "field to delete"))

    def _clear_action(self, target_token: Token) -> Action:
        target = target_token.text
        if target.lower().startswith(LABEL_PREFIX) or target_token.upper in ACTION_KEYWORDS:
            raise ParseError(f"Cannot clear '{target}'", position=target_token.position,
                             token=target)
        self.references.append(("target", target, target_token.position))
        return Action(ActionType.CLEAR_VALUE.value, target)


def _with_logical(entry, connector: str):
    if isinstance(entry, ConditionGroup):
        return ConditionGroup(entries=entry.entries, logical_operator=connector)
    return Condition(
        field=entry.field,
        operator=entry.operator,
        value=entry.value,
        logical_operator=connector,
        case_sensitive=entry.case_sensitive,
        negate=entry.negate,
    )


# =============================================================================
# Public API
# =============================================================================

def parse_expression(text: str) -> RuleAst:
    """Parse a text expression into a RuleAst. Raises ParseError."""
    try:
        return ExpressionParser(text).parse()
    except ParseError as e:
        logger.debug("[PARSER] Rejected expression %r at %s: %s", text, e.position, e.message)
        raise


def parse_rule(conditions: Optional[list] = None, actions: Optional[list] = None,
               expression: Optional[str] = None) -> RuleAst:
    """Build the AST from either authoring form. Text wins when both are given."""
    if expression:
        return parse_expression(expression)
    return RuleAst(
        conditions=ConditionGroup.from_list(conditions),
        actions=tuple(Action.from_dict(a) for a in actions or []),
    )


def expression_to_structured(text: str) -> dict:
    """Text expression -> {"conditions": [...], "actions": [...]} dicts."""
    return parse_expression(text).to_dict()


def structured_to_expression(conditions: Optional[list] = None, actions: Optional[list] = None,
                             source_type: str = STREAM) -> str:
    """
    Render structured conditions/actions as a text expression.

    Flat condition lists round-trip losslessly; nested groups are wrapped in
    parentheses.

    Raises:
        UnsupportedExpressionError: For actions with no text form
    """
    group = ConditionGroup.from_list(conditions)
    parts = []
    condition_text = _render_entries(group.entries)
    if condition_text:
        parts.append(condition_text)
    rendered_actions = [_render_action(Action.from_dict(a), source_type) for a in actions or []]
    if rendered_actions:
        parts.append("SET " + ", ".join(rendered_actions))
    return " ".join(parts)


def _quote(value: str) -> str:
    escaped = (value or "").replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _render_entries(entries: tuple) -> str:
    out = []
    for index, entry in enumerate(entries):
        if isinstance(entry, ConditionGroup):
            if not entry.entries:
                raise UnsupportedExpressionError("Empty condition groups have no text form")
            out.append("(" + _render_entries(entry.entries) + ")")
        else:
            out.append(_render_condition(entry))
        if index < len(entries) - 1:
            out.append(entry.logical_operator)
    return " ".join(out)


def _render_name(name: Optional[str]) -> str:
    """A field or target name exactly as tokenize() reads it back, else raise."""
    text = name or ""
    try:
        tokens = tokenize(text) if text and text[0] in _WORD_CHARS else []
    except ParseError:
        tokens = []
    reserved = {*CONNECTORS, *ACTION_KEYWORDS, *MODIFIERS}
    if len(tokens) != 2 or tokens[0].text != text or tokens[0].upper in reserved:
        raise UnsupportedExpressionError(f"Name '{text}' has no text form", token=text)
    return text


def _render_condition(condition: Condition) -> str:
    words = [_render_name(condition.field)]
    if condition.negate:
        words.append("not")
    if condition.case_sensitive:
        words.append("case_sensitive")
    words.append(condition.operator)
    words.append(_quote(condition.value))
    return " ".join(words)


def _render_action(action: Action, source_type: str) -> str:
    action_type = action.action_type
    if action_type == ActionType.SET_LABEL.value:
        payload = action.payload or {}
        target = _render_name(f"{LABEL_PREFIX}{payload.get('key', '')}")
        return f"{target} = {_quote(str(payload.get('value', '')))}"
    if action_type == ActionType.SET_LOGO.value:
        target = _render_name(action.target_field or DEFAULT_LOGO_FIELD.get(source_type, "tvg_logo"))
        return f"{target} = {_quote(LOGO_PREFIX + str(action.payload or ''))}"

    target = _render_name(action.target_field)
    if action_type == ActionType.SET_VALUE.value:
        return f"{target} = {_quote(str(action.payload or ''))}"
    if action_type == ActionType.SET_DEFAULT_IF_EMPTY.value:
        return f"{target} ?= {_quote(str(action.payload or ''))}"
    if action_type == ActionType.CLEAR_VALUE.value:
        return f"{target} = {NULL}"
    if action_type == ActionType.TRANSFORM_VALUE.value:
        payload = action.payload or {}
        name = payload.get("transform")
        if name in ("append", "remove") and set(payload) <= {"transform", "value"}:
            op = "+=" if name == "append" else "-="
            return f"{target} {op} {_quote(str(payload.get('value', '')))}"
        raise UnsupportedExpressionError(f"Transform '{name}' has no text form")
    raise UnsupportedExpressionError(f"Action '{action_type}' has no text form")
