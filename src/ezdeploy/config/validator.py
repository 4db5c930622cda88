"""Turn pydantic validation errors into ezdeploy configuration messages."""

from pydantic import ValidationError as PydanticValidationError

# pydantic prefixes messages raised from our own validators with this
_VALUE_ERROR_PREFIX = "Value error, "


def _field_path(error: dict) -> str:
    loc = error.get("loc", ())
    # model_validator errors carry no location; they belong to the section
    return ".".join(str(item) for item in loc) if loc else "config"


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per problem.

    Input values are never echoed back, since configuration sections carry
    passwords.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        Messages naming the dotted field path, e.g.
        ``kubernetes.deployment.replicas: Input should be less than or equal to 20``
    """
    messages: list[str] = []
    for error in exc.errors():
        path = _field_path(error)
        kind = error.get("type", "")
        if kind == "missing":
            text = "required field is missing"
        elif kind == "extra_forbidden":
            text = "unknown configuration key"
        else:
            text = str(error.get("msg", "invalid value")).removeprefix(
                _VALUE_ERROR_PREFIX
            )
        messages.append(f"{path}: {text}")
    return messages or ["configuration is invalid"]


def error_fields(exc: PydanticValidationError) -> list[str]:
    """Return the dotted path of every field named in ``exc``, in order."""
    fields: list[str] = []
    for error in exc.errors():
        path = _field_path(error)
        if path not in fields:
            fields.append(path)
    return fields
