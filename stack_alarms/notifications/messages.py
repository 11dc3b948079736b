from __future__ import annotations

from jinja2 import Environment, StrictUndefined, Template, TemplateError

from stack_alarms.config import ConfigError
from stack_alarms.models import HealthTransition

DEFAULT_UNHEALTHY_TEMPLATE = "🚨 {{ qualified_name }} became {{ state }}\n{{ url }}"
DEFAULT_RECOVERY_TEMPLATE = "✅ {{ qualified_name }} recovered ({{ state }})\n{{ url }}"

_env = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=False)


def compile_template(source: str, *, target_name: str) -> Template:
    try:
        return _env.from_string(source)
    except TemplateError as exc:
        raise ConfigError(f"targets.{target_name}.template is not a valid template: {exc}") from exc


def message_context(transition: HealthTransition, url: str) -> dict[str, object]:
    return {
        "service": transition.service.name,
        "stack": transition.stack_name,
        "qualified_name": transition.qualified_name,
        "state": transition.state,
        "previous_state": transition.previous_state,
        "healthy": transition.healthy,
        "url": url,
    }


def render_message(transition: HealthTransition, url: str, template: Template | None = None) -> str:
    if template is None:
        source = DEFAULT_RECOVERY_TEMPLATE if transition.healthy else DEFAULT_UNHEALTHY_TEMPLATE
        template = _env.from_string(source)
    return template.render(**message_context(transition, url)).strip()
