"""
Transform Registry

Named value transforms for the transform_value action. A transform receives
the current field value (never None) and the directive dict, and returns the
new value.

    @register_transform("reverse")
    def _reverse(value, directive):
        return value[::-1]
"""
import logging
import re
from typing import Callable, Optional

from rule_errors import EvaluationError


logger = logging.getLogger(__name__)

TransformFunc = Callable[[str, dict], str]

_TRANSFORMS: dict[str, TransformFunc] = {}


def register_transform(name: str):
    """Decorator registering a transform under a name. Re-registering replaces it."""
    def decorator(func: TransformFunc) -> TransformFunc:
        if name in _TRANSFORMS:
            logger.info("[TRANSFORMS] Replacing transform '%s'", name)
        _TRANSFORMS[name] = func
        return func
    return decorator


def get_transform(name: str) -> Optional[TransformFunc]:
    return _TRANSFORMS.get(name)


def available_transforms() -> list[str]:
    return sorted(_TRANSFORMS)


def validate_directive(directive) -> list[str]:
    """Shape check for a transform directive. Returns error messages."""
    if not isinstance(directive, dict):
        return ["transform_value requires a directive object"]
    name = directive.get("transform")
    if not name:
        return ["transform_value directive requires a 'transform' name"]
    if name not in _TRANSFORMS:
        return [f"Unknown transform: {name}"]
    errors = []
    if name == "regex_replace":
        if not isinstance(directive.get("pattern"), str) or not directive.get("pattern"):
            errors.append("regex_replace requires a 'pattern'")
        if directive.get("replacement") is not None and not isinstance(directive.get("replacement"), str):
            errors.append("regex_replace 'replacement' must be a string")
    elif name == "replace":
        if not isinstance(directive.get("find"), str) or not directive.get("find"):
            errors.append("replace requires a 'find' string")
    elif name in ("append", "prepend", "remove"):
        if not isinstance(directive.get("value"), str):
            errors.append(f"{name} requires a 'value' string")
    return errors


_TEMPLATE_PIECE = re.compile(r"\$(\d+)|\\(\d+|g<[^>]*>)?")


def replacement_template(replacement: Optional[str]) -> str:
    """
    Turn a user replacement string into a re.sub template.

    $1 and \\1 (and \\g<name>) are group references. Any other backslash is
    literal, so "\\d" stays the two characters backslash and d.
    """
    def piece(match):
        if match.group(1) is not None:
            return "\\" + match.group(1)
        if match.group(2) is not None:
            return match.group(0)
        return "\\\\"
    return _TEMPLATE_PIECE.sub(piece, replacement or "")


def apply_transform(value: Optional[str], directive: dict, compile_regex=None) -> str:
    """
    Run the transform named by the directive.

    Args:
        value: Current field value (None is treated as '')
        directive: {"transform": name, ...params}
        compile_regex: Optional (pattern, flags) -> compiled regex, for cache reuse

    Raises:
        EvaluationError: Unknown transform or transform failure
    """
    name = directive.get("transform") if isinstance(directive, dict) else None
    func = _TRANSFORMS.get(name)
    if func is None:
        raise EvaluationError(f"Unknown transform: {name}")
    params = dict(directive)
    if compile_regex is not None:
        params["_compile"] = compile_regex
    try:
        return func(value or "", params)
    except EvaluationError:
        raise
    except (re.error, TypeError, ValueError) as e:
        raise EvaluationError(f"Transform '{name}' failed: {e}")


# =============================================================================
# Built-in Transforms
# =============================================================================

@register_transform("regex_replace")
def _regex_replace(value: str, directive: dict) -> str:
    pattern = directive["pattern"]
    flags = 0 if directive.get("case_sensitive") else re.IGNORECASE
    compile_regex = directive.get("_compile") or re.compile
    regex = compile_regex(pattern, flags)
    return regex.sub(replacement_template(directive.get("replacement")), value)


@register_transform("replace")
def _replace(value: str, directive: dict) -> str:
    return value.replace(directive["find"], directive.get("replacement") or "")


@register_transform("append")
def _append(value: str, directive: dict) -> str:
    return value + directive.get("value", "")


@register_transform("prepend")
def _prepend(value: str, directive: dict) -> str:
    return directive.get("value", "") + value


@register_transform("remove")
def _remove(value: str, directive: dict) -> str:
    target = directive.get("value", "")
    if not target:
        return value
    return value.replace(target, "").strip()


@register_transform("uppercase")
def _uppercase(value: str, directive: dict) -> str:
    return value.upper()


@register_transform("lowercase")
def _lowercase(value: str, directive: dict) -> str:
    return value.lower()


@register_transform("title")
def _title(value: str, directive: dict) -> str:
    return value.title()


@register_transform("trim")
def _trim(value: str, directive: dict) -> str:
    return value.strip()
