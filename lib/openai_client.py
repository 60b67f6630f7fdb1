import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from openai import AsyncOpenAI, OpenAI

from lib.config import Settings, get_settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    result: Any
    is_error: bool = False
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallRecord:
    id: str
    name: str
    arguments: Dict[str, Any]
    result: Any
    is_error: bool


@dataclass
class ModelStep:
    text: str
    finish_reason: Optional[str]
    tool_calls: List[ToolCallRecord] = field(default_factory=list)


@dataclass
class ModelResult:
    text: str
    finish_reason: Optional[str]
    steps: List[ModelStep]
    usage: Dict[str, int]

    @property
    def tool_calls(self) -> List[ToolCallRecord]:
        return [call for step in self.steps for call in step.tool_calls]


ToolExecutor = Callable[[str, str], Awaitable[ToolOutcome]]


class OpenAIClient:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None,
                 async_client: Optional[AsyncOpenAI] = None):
        self.settings = settings or get_settings()
        self.model = self.settings.openai_model
        self.client = client or OpenAI(**self._client_options())
        self.async_client = async_client

    def _client_options(self) -> Dict[str, Any]:
        return {
            'api_key': self.settings.openai_api_key,
            'timeout': self.settings.openai_timeout,
            'max_retries': self.settings.openai_max_retries,
        }

    async def _complete(self, client: AsyncOpenAI, messages: List[Dict[str, Any]],
                        tools: Optional[List[Dict[str, Any]]]):
        kwargs: Dict[str, Any] = {
            'model': self.model,
            'messages': messages,
            'max_tokens': 1024,
        }
        if tools:
            kwargs['tools'] = tools

        try:
            return await client.chat.completions.create(**kwargs)
        except Exception as e:
            raise AppError(f"Response generation failed: {str(e)}", status_code=502) from e

    async def run_with_tools(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        execute_tool: ToolExecutor,
        max_steps: int,
        request_id: str = '',
    ) -> ModelResult:
        """Let the model call tools until it answers or runs out of steps.

        Every step is one completion call. Tool calls requested in a step are
        executed before the next step; when the final step still asks for
        tools they are executed but the model is not called again.
        """
        # httpx pools belong to the event loop that opened them; each request runs in its own loop
        client = self.async_client or AsyncOpenAI(**self._client_options())
        try:
            return await self._run_steps(client, system_prompt, messages, tools, execute_tool, max_steps, request_id)
        finally:
            if client is not self.async_client:
                await client.close()

    async def _run_steps(self, client: AsyncOpenAI, system_prompt: str, messages: List[Dict[str, Any]],
                         tools: List[Dict[str, Any]], execute_tool: ToolExecutor, max_steps: int,
                         request_id: str) -> ModelResult:
        conversation: List[Dict[str, Any]] = [{'role': 'system', 'content': system_prompt}, *messages]
        steps: List[ModelStep] = []
        usage = {'prompt_tokens': 0, 'completion_tokens': 0, 'total_tokens': 0}

        for step_number in range(1, max_steps + 1):
            response = await self._complete(client, conversation, tools)
            choice = response.choices[0]
            message = choice.message
            self._add_usage(usage, getattr(response, 'usage', None))

            step = ModelStep(text=message.content or '', finish_reason=choice.finish_reason)
            steps.append(step)
            requested = message.tool_calls or []
            logger.info(
                f"[{request_id}] Model step {step_number}: finish_reason={choice.finish_reason}, "
                f"tools={[call.function.name for call in requested]}"
            )
            if not requested:
                break

            conversation.append({
                'role': 'assistant',
                'content': message.content,
                'tool_calls': [
                    {
                        'id': call.id,
                        'type': 'function',
                        'function': {'name': call.function.name, 'arguments': call.function.arguments},
                    }
                    for call in requested
                ],
            })
            for call in requested:
                outcome = await execute_tool(call.function.name, call.function.arguments)
                step.tool_calls.append(ToolCallRecord(
                    id=call.id,
                    name=call.function.name,
                    arguments=outcome.arguments,
                    result=outcome.result,
                    is_error=outcome.is_error,
                ))
                conversation.append({
                    'role': 'tool',
                    'tool_call_id': call.id,
                    'content': json.dumps(outcome.result, default=str),
                })
        else:
            logger.warning(f"[{request_id}] Max tool steps reached ({max_steps})")

        final = steps[-1]
        return ModelResult(
            text=final.text.strip(),
            finish_reason=final.finish_reason,
            steps=steps,
            usage=usage,
        )

    def stream_reply(self, system_prompt: str, messages: List[Dict[str, Any]]) -> Iterator[str]:
        """Stream a tool-less reply as text deltas."""
        stream = self.client.chat.completions.create(
            model=self.model,
            messages=[{'role': 'system', 'content': system_prompt}, *messages],
            max_tokens=1024,
            stream=True,
        )
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta

    @staticmethod
    def _add_usage(total: Dict[str, int], usage) -> None:
        if usage is None:
            return
        for key in total:
            value = getattr(usage, key, None)
            if isinstance(value, int):
                total[key] += value
