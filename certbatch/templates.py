"""
Message Template Repository

Default email subjects and bodies for each generation kind, plus rendering of
operator-supplied templates. Placeholders use the ${name} form.
"""

from typing import Any, Optional

from jinja2 import TemplateError, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from .models import GenerationKind


# Sandboxed so operator templates cannot reach Python internals. Only ${...} is
# template syntax; block and comment markers are moved off "{%" and "{#" so
# those stay literal text in a message.
_environment = SandboxedEnvironment(
    variable_start_string="${",
    variable_end_string="}",
    block_start_string="${%",
    block_end_string="%}",
    comment_start_string="${#",
    comment_end_string="#}",
    autoescape=False,
    keep_trailing_newline=True,
)

# Values used to trial-render a template before any row is processed
SAMPLE_VALUES = {"name": "Sample Name", "email": "sample@example.com", "password": "sample-password"}

_RENDER_ERRORS = (TemplateError, ArithmeticError, LookupError, TypeError, AttributeError)


TEMPLATE_REPOSITORY = {
    GenerationKind.CERTIFICATE: {
        "subject": "Your Certificate",
        "body": """Dear ${name},

Please find your certificate attached.

Best regards""",
    },
    GenerationKind.CREDENTIAL: {
        "subject": "Your Swayam Credentials",
        "body": """Dear ${name},

Here are your Swayam login credentials:

Email: ${email}
Password: ${password}

Best regards""",
    },
}


def get_template_description(kind: GenerationKind) -> str:
    """Get human-readable description for a template"""
    descriptions = {
        GenerationKind.CERTIFICATE: "Certificate delivery with the generated PDF attached",
        GenerationKind.CREDENTIAL: "Swayam login credentials sent as plain text",
    }
    return descriptions.get(kind, "Email template")


def get_default_subject(kind: GenerationKind) -> str:
    return TEMPLATE_REPOSITORY[kind]["subject"]


def get_template_content(kind: GenerationKind, override: Optional[str] = None) -> str:
    """Get template body, preferring an operator-supplied override"""
    if override:
        return override
    return TEMPLATE_REPOSITORY[kind]["body"]


class MessageTemplate:
    """
    A compiled message template

    Compiling also renders the template once with sample values, so a
    template that is malformed or touches unsafe attributes is rejected
    before a batch starts.

    Raises:
        ValueError: If the template cannot be compiled or rendered
    """

    def __init__(self, source: str):
        self.source = source
        try:
            self._template = _environment.from_string(source)
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid message template (line {e.lineno}): {e.message}") from e
        self.render(**SAMPLE_VALUES)

    def render(self, **values: Any) -> str:
        """Render with placeholder values; unknown placeholders render as empty strings"""
        try:
            return self._template.render(**values)
        except _RENDER_ERRORS as e:
            raise ValueError(f"Message template cannot be rendered: {e}") from e


def render_message(template_str: str, **values: Any) -> str:
    """
    Render a message template

    Args:
        template_str: Template text with ${placeholder} markers
        **values: Placeholder values (name, email, password)

    Returns:
        Rendered text; unknown placeholders render as empty strings

    Raises:
        ValueError: If the template is malformed or unsafe
    """
    return MessageTemplate(template_str).render(**values)


def get_all_templates():
    """Get all available templates with metadata"""
    return [
        {
            "kind": kind.value,
            "description": get_template_description(kind),
            "subject": TEMPLATE_REPOSITORY[kind]["subject"],
            "body": TEMPLATE_REPOSITORY[kind]["body"],
        }
        for kind in GenerationKind
    ]
