"""
Environment variable specs, parsing and startup validation.

Each variable is declared once as an ``EnvVarSpec`` in ``conf`` and read
through ``parse``; ``validate`` is run at startup so a misconfigured
deployment fails before it serves traffic.
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError, create_model

from utils import log

logger = log.get_logger(__name__)


@dataclass(frozen=True)
class EnvVarSpec:
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(spec: EnvVarSpec) -> Any:
    """Read and parse *spec*; ``None`` for an unset optional variable without default."""
    raw = os.environ.get(spec.id)
    if raw is None or raw == "":
        raw = spec.default
    if raw is None:
        if spec.is_optional:
            return None
        raise ValueError(f"Missing required environment variable {spec.id}")
    return spec.parse(raw)


def _display(spec: EnvVarSpec, value: Any) -> str:
    if spec.is_secret and value:
        return "****"
    return repr(value)


def validate(specs: List[EnvVarSpec]) -> bool:
    """Parse every spec and check its type; logs each problem and returns False if any."""
    ok = True
    for spec in specs:
        try:
            value = parse(spec)
        except ValueError as e:
            logger.error(f"Invalid environment variable {spec.id}: {e}")
            ok = False
            continue

        if value is None and spec.is_optional:
            continue

        model = create_model(f"Env_{spec.id}", value=spec.type)
        try:
            model(value=value)
        except ValidationError as e:
            logger.error(f"Invalid environment variable {spec.id}={_display(spec, value)}: {e.errors()[0]['msg']}")
            ok = False
            continue

        logger.debug(f"{spec.id}={_display(spec, value)}")
    return ok
