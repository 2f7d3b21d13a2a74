"""
Chat Templates

Renders a conversation into the prompt text a chat-tuned model was trained on.
Each model ships its format as a Jinja2 template (tokenizer_config.json,
chat_template.jinja, or GGUF tokenizer.chat_template); we render it in a
sandboxed environment with the same globals Hugging Face passes:

    messages               list of {"role": ..., "content": ...}
    bos_token, eos_token   model-declared special token strings
    add_generation_prompt  always True here (we want the assistant turn opened)
    raise_exception(msg)   template-side validation -> TemplateError

Models without a template fall back to joining message contents with a blank
line (TemplatePolicy.FALLBACK) or refuse (TemplatePolicy.STRICT).
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import json
import logging

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

from ..errors import InvalidRoleError, NoTemplateError, TemplateError

logger = logging.getLogger(__name__)

FALLBACK_SEPARATOR = "\n\n"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Union["Role", str]) -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise InvalidRoleError(
                f"Unknown role {value!r}; expected one of {[r.value for r in cls]}"
            ) from e


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class TemplatePolicy(str, Enum):
    """What run_chat does when the model declares no chat template."""

    FALLBACK = "fallback"
    STRICT = "strict"


ConversationLike = Iterable[Union[Message, Tuple[Union[Role, str], str], Dict[str, str]]]


def normalize_conversation(conversation: ConversationLike) -> List[Message]:
    """Accept Messages, (role, text) tuples, or {"role", "content"} dicts."""
    messages = []
    for item in conversation:
        if isinstance(item, Message):
            role, content = Role.parse(item.role), item.content
        elif isinstance(item, dict):
            role, content = Role.parse(item.get("role")), item.get("content")
        else:
            try:
                raw_role, content = item
            except (TypeError, ValueError) as e:
                raise TemplateError(f"Malformed conversation entry: {item!r}") from e
            role = Role.parse(raw_role)
        if not isinstance(content, str):
            raise TemplateError(f"Message content must be str, got {type(content).__name__}")
        messages.append(Message(role=role, content=content))

    if not messages:
        raise TemplateError("Cannot render an empty conversation")
    return messages


def _raise_exception(message):
    raise TemplateError(f"Chat template rejected the conversation: {message}")


def _tojson(value, indent=None):
    return json.dumps(value, ensure_ascii=False, indent=indent)


def _make_environment() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.globals["raise_exception"] = _raise_exception
    env.filters["tojson"] = _tojson
    return env


class ChatTemplate:
    """A compiled model chat template plus the special tokens it references."""

    def __init__(
        self,
        source: str,
        bos_token: Optional[str] = None,
        eos_token: Optional[str] = None,
        add_generation_prompt: bool = True,
    ):
        self.source = source
        self.bos_token = bos_token or ""
        self.eos_token = eos_token or ""
        self.add_generation_prompt = add_generation_prompt
        try:
            self._template = _make_environment().from_string(source)
        except jinja2.TemplateError as e:
            raise TemplateError(f"Invalid chat template: {e}") from e

    def render(self, conversation: ConversationLike) -> str:
        messages = normalize_conversation(conversation)
        try:
            return self._template.render(
                messages=[m.to_dict() for m in messages],
                bos_token=self.bos_token,
                eos_token=self.eos_token,
                add_generation_prompt=self.add_generation_prompt,
            )
        except TemplateError:
            raise
        except jinja2.TemplateError as e:
            raise TemplateError(f"Chat template failed to render: {e}") from e
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise TemplateError(f"Chat template failed to render: {e}") from e

    def __repr__(self) -> str:
        return f"ChatTemplate(bos={self.bos_token!r}, eos={self.eos_token!r}, {len(self.source)} chars)"


def render_fallback(conversation: ConversationLike) -> str:
    """Contents in order, roles dropped, separated by a blank line."""
    messages = normalize_conversation(conversation)
    return FALLBACK_SEPARATOR.join(m.content for m in messages)


def render_conversation(
    conversation: ConversationLike,
    template: Optional[ChatTemplate],
    policy: TemplatePolicy = TemplatePolicy.FALLBACK,
) -> str:
    """Render with the model template, or apply the missing-template policy."""
    if template is not None:
        return template.render(conversation)
    if TemplatePolicy(policy) == TemplatePolicy.STRICT:
        # Still reject malformed conversations before reporting the missing template
        normalize_conversation(conversation)
        raise NoTemplateError("Model declares no chat template (strict template policy)")
    return render_fallback(conversation)


def select_template_source(value: Any) -> Optional[str]:
    """
    Pick the template string out of a tokenizer_config "chat_template" entry.

    Hugging Face allows either a plain string or a list of
    {"name": ..., "template": ...} entries, of which "default" is used.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Sequence):
        named = {
            entry.get("name"): entry.get("template")
            for entry in value
            if isinstance(entry, dict)
        }
        if "default" in named:
            return named["default"]
        logger.warning(f"No 'default' chat template among {sorted(k for k in named if k)}")
        return None
    raise TemplateError(f"Unrecognized chat_template entry of type {type(value).__name__}")


def load_template_source(model_dir: Path, tokenizer_config: Dict[str, Any]) -> Optional[str]:
    """Template from chat_template.jinja if present, else tokenizer_config.json."""
    jinja_path = Path(model_dir) / "chat_template.jinja"
    if jinja_path.is_file():
        return jinja_path.read_text(encoding="utf-8")
    return select_template_source(tokenizer_config.get("chat_template"))
