"""Patient-facing message templates."""

from __future__ import annotations

import logging
import re
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

NEW_FORM_TEMPLATE = "novo_formulario"
DEFAULT_FORM_URL = "https://fitclub.app.br"

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def _fallback_form_message(variables: Mapping[str, Optional[str]]) -> str:
    form_name = variables.get("form_name") or "Formulário"
    patient_name = variables.get("patient_name")
    greeting = f"Olá {patient_name}!" if patient_name else "Olá!"
    form_url = variables.get("form_url") or DEFAULT_FORM_URL
    return (
        f"📋 *{form_name}*\n\n"
        f"{greeting} Você tem um formulário para preencher.\n\n"
        f"🔗 Acesse o app: {form_url}\n\n"
        "_Responda assim que possível._"
    )


def render_template(template: str, variables: Mapping[str, Optional[str]]) -> str:
    """Fill ``{name}`` placeholders; unknown ones are kept as written."""

    def replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    content = _PLACEHOLDER.sub(replace, template)
    leftover = _PLACEHOLDER.findall(content)
    if leftover:
        logger.warning(f"Template left placeholders unfilled: {leftover}")
    return content


def render_form_message(
    variables: Mapping[str, Optional[str]], template: Optional[str] = None
) -> str:
    """Render the ``novo_formulario`` message announcing a form to fill in."""

    if not template:
        return _fallback_form_message(variables)
    return render_template(template, variables)
