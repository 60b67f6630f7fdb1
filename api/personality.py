import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from lib.error_handler import ConfigurationError

logger = logging.getLogger(__name__)

EMPTY_TURNS_REPLY = "The sake speaks through silence... but perhaps you could speak louder?"
EMPTY_MODEL_REPLY = "The sake speaks, but I cannot hear its words. Try again."


@dataclass(frozen=True)
class ChatProfile:
    """How one channel talks to the model."""
    name: str
    sections: Tuple[str, ...]
    use_tools: bool
    stream: bool


WHATSAPP_PROFILE = ChatProfile(name='whatsapp', sections=('persona', 'tools'), use_tools=True, stream=False)
WEB_PROFILE = ChatProfile(name='web', sections=('persona', 'web'), use_tools=False, stream=True)


class Personality:
    """Persona text assets, read once when the app starts."""

    SECTIONS = ('persona', 'tools', 'admin', 'web')

    def __init__(self, prompts_dir: Path, base_url: str):
        self.prompts_dir = Path(prompts_dir)
        self.base_url = base_url.rstrip('/')
        self.sections: Dict[str, str] = {}
        for name in self.SECTIONS:
            path = self.prompts_dir / f"{name}.md"
            try:
                text = path.read_text(encoding='utf-8').strip()
            except OSError as e:
                raise ConfigurationError(f"Missing prompt asset {path}: {str(e)}") from e
            self.sections[name] = text.format(base_url=self.base_url) if name == 'tools' else text
        logger.info(f"Loaded prompt assets from {self.prompts_dir}")

    def system_prompt(self, profile: ChatProfile, context: Mapping[str, Any], is_admin: bool = False) -> str:
        parts = [self.sections[name] for name in profile.sections]
        if context:
            parts.append(f"Current conversation context: {json.dumps(dict(context), indent=2, default=str)}")
        if is_admin and profile.use_tools:
            parts.append(self.sections['admin'])
        return "\n\n".join(parts)
