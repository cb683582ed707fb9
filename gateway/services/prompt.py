from typing import Iterable
from gateway.schemas.chat import ChatMessage, MessageRole

PROMPTER_TOKEN = "<|prompter|>"
ASSISTANT_TOKEN = "<|assistant|>"
END_OF_TEXT_TOKEN = "<|endoftext|>"


def build_open_assistant_prompt(messages: Iterable[ChatMessage]) -> str:
    """
    Build the prompt format expected by OpenAssistant models.

    User turns are wrapped in prompter markers, every other turn in assistant
    markers. A trailing open assistant marker asks the model for the next
    assistant turn.
    """
    parts = []
    for message in messages:
        opener = PROMPTER_TOKEN if message.role == MessageRole.USER else ASSISTANT_TOKEN
        parts.append(f"{opener}{message.content}{END_OF_TEXT_TOKEN}")
    return "".join(parts) + ASSISTANT_TOKEN
