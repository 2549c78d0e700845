"""Chat orchestration with provider adapters, memory and MCP tools.

This module runs a conversation turn end to end: it assembles the request
(system prompt, recalled memories, windowed history, offered tools), drives
the provider adapter in streaming or blocking mode, writes partial output to
the assistant message as it arrives, dispatches tool calls and loops until
the model answers without tools or the iteration bound is reached.

Turn lifecycle:
    1. ``send_message`` stores the user message and an empty assistant
       placeholder marked streaming, then starts the turn task.
    2. Each iteration builds a fresh request, so tool results from the
       previous iteration are part of the history.
    3. When the model requests tools, each call gets an assistant
       tool-invocation record plus a ``tool`` result message; the
       placeholder is cleared and the loop continues.
    4. The placeholder is always finalized (``is_streaming`` False), whether
       the turn completes, fails or is cancelled.

Error handling:
    Adapter and network failures become the message text (``"Error: ..."``).
    Tool failures become the tool's textual result so the model can react.
    Per-delta saves are best effort; finalization failures propagate.

Example Usage:
    ```python
    chat_manager = ChatManager(memory_manager, mcp_manager)
    task = await chat_manager.send_message(session, conversation, "Hello")
    await task
    ```
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cogitap.config.schema import CogitapConfig
from cogitap.core.config import config_manager
from cogitap.core.models import Conversation, Message, MessageRole, now
from cogitap.core.tool_calls import ToolCallAccumulator
from cogitap.mcp.manager import MCPManager
from cogitap.mcp.registry import MCPToolRegistry
from cogitap.memory import is_memory_tool
from cogitap.memory.manager import MemoryManager
from cogitap.memory.tools import build_memory_tools, execute_memory_tool
from cogitap.providers import (
    APIAdapter,
    ProviderSettings,
    ToolCall,
    ToolChoice,
    UnifiedChatRequest,
    UnifiedMessage,
)
from cogitap.providers.errors import AdapterError
from cogitap.providers.factory import create_adapter
from cogitap.providers.http import open_line_stream, send_request
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

MEMORY_INSTRUCTION = (
    "The memory section above holds facts recalled from earlier conversations. "
    "Use them only when they are relevant to the user's request and ignore them otherwise."
)

StreamingListener = Callable[[bool, Message | None], None]


class TurnConfigurationError(Exception):
    """The conversation cannot be sent (no model or provider selected)."""


@dataclass
class _Turn:
    task: asyncio.Task
    cancel_event: asyncio.Event
    message: Message


def format_memory_block(system_prompt: str, memories: str) -> str:
    """Append recalled memories to the system prompt as a delimited section."""
    parts = [system_prompt.strip()] if system_prompt and system_prompt.strip() else []
    parts.append(f"<memory>\n{memories}\n</memory>")
    parts.append(MEMORY_INSTRUCTION)
    return "\n\n".join(parts)


def to_unified_message(message: Message) -> UnifiedMessage | None:
    """Convert a stored message into its wire form.

    ``tool`` messages without a call id cannot be answered to anything and
    are skipped.
    """
    if message.is_tool_invocation:
        call = ToolCall(
            id=message.tool_call_id or "",
            name=message.tool_call_name,
            arguments=message.tool_call_arguments or "",
        )
        return UnifiedMessage.with_tool_calls(message.content or "", [call])
    if message.role == MessageRole.TOOL.value:
        if not message.tool_call_id:
            logger.debug(f"Skipping tool message {message.id} without call id")
            return None
        return UnifiedMessage.tool_result(message.content or "", message.tool_call_id)
    return UnifiedMessage.plain(message.role, message.content or "")


class ChatManager:
    """Runs chat turns against the provider selected for each conversation.

    Attributes:
        memory_manager (MemoryManager): Memory store used for recall and tools
        mcp_manager (MCPManager): Routes remote tool calls
        config (CogitapConfig): Application configuration
        http_client (httpx.AsyncClient | None): Shared client for provider
            requests; a short-lived one is opened per request when None
        current_streaming_message (Message | None): Placeholder of the most
            recently started turn while it runs

    Concurrency:
        One turn per conversation. Starting a turn cancels the turn already
        running in that conversation; turns of different conversations are
        independent.
    """

    def __init__(
        self,
        memory_manager: MemoryManager,
        mcp_manager: MCPManager,
        config: CogitapConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        adapter_factory: Callable[..., APIAdapter] = create_adapter,
    ):
        self.memory_manager = memory_manager
        self.mcp_manager = mcp_manager
        self.config = config or config_manager.config
        self.http_client = http_client
        self.adapter_factory = adapter_factory

        self.current_streaming_message: Message | None = None
        self._turns: dict[str, _Turn] = {}
        self._listeners: list[StreamingListener] = []

    # Observable state

    @property
    def is_streaming(self) -> bool:
        return any(not turn.task.done() for turn in self._turns.values())

    def add_listener(self, listener: StreamingListener):
        """Register ``listener(is_streaming, current_streaming_message)``."""
        self._listeners.append(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self.is_streaming, self.current_streaming_message)
            except Exception as e:
                logger.error(f"Streaming listener failed: {e}")

    # Persistence helpers

    @staticmethod
    def _commit(session: Session, action: str):
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise

    @staticmethod
    def _save_progress(session: Session):
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Could not persist streaming progress: {e}")

    # Turn control

    async def send_message(
        self, session: Session, conversation: Conversation, content: str
    ) -> asyncio.Task:
        """Store a user message and start the assistant turn.

        Any turn still running in the conversation is cancelled first.

        Returns:
            The task running the turn
        """
        await self._cancel_turn(session, conversation.id)

        conversation.messages.append(
            Message(role=MessageRole.USER.value, content=content, created_at=now())
        )
        placeholder = Message(
            role=MessageRole.ASSISTANT.value,
            content="",
            is_streaming=True,
            created_at=now(),
        )
        conversation.messages.append(placeholder)
        conversation.updated_at = now()
        self._commit(session, "store user message")

        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._run_turn(session, conversation, placeholder, cancel_event)
        )
        self._turns[conversation.id] = _Turn(task, cancel_event, placeholder)
        self.current_streaming_message = placeholder
        task.add_done_callback(lambda t, cid=conversation.id: self._turn_finished(cid, t))
        self._notify()
        return task

    def _turn_finished(self, conversation_id: str, task: asyncio.Task):
        turn = self._turns.get(conversation_id)
        if turn is not None and turn.task is task:
            del self._turns[conversation_id]
            if self.current_streaming_message is turn.message:
                self.current_streaming_message = None
        self._notify()

    async def _cancel_turn(self, session: Session, conversation_id: str):
        turn = self._turns.get(conversation_id)
        if turn is None or turn.task.done():
            return

        logger.info(f"Cancelling turn in conversation {conversation_id}")
        turn.cancel_event.set()
        turn.task.cancel()
        await asyncio.wait([turn.task])

        # A task cancelled before it started never reaches its own cleanup
        if turn.message.is_streaming:
            turn.message.is_streaming = False
            self._commit(session, "finalize cancelled message")

    async def stop_generation(self, session: Session, conversation_id: str | None = None):
        """Stop the turn of one conversation, or of every conversation.

        Partial output already written to the message is kept.
        """
        if conversation_id is not None:
            await self._cancel_turn(session, conversation_id)
            return
        for cid in list(self._turns):
            await self._cancel_turn(session, cid)

    async def _run_turn(
        self,
        session: Session,
        conversation: Conversation,
        message: Message,
        cancel_event: asyncio.Event,
    ):
        try:
            adapter = self._adapter_for(conversation)
            await self._tool_loop(session, conversation, message, adapter, cancel_event)
        except asyncio.CancelledError:
            logger.info(f"Turn cancelled in conversation {conversation.id}")
        except (AdapterError, TurnConfigurationError) as e:
            logger.error(f"Turn failed in conversation {conversation.id}: {e}")
            message.content = f"{self.config.chat.error_prefix}{e}"
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in conversation {conversation.id}")
            message.content = f"{self.config.chat.error_prefix}{e}"
        finally:
            message.is_streaming = False
            conversation.updated_at = now()
            self._commit(session, "finalize assistant message")

    def _adapter_for(self, conversation: Conversation) -> APIAdapter:
        model = conversation.selected_model
        if model is None:
            raise TurnConfigurationError("No model selected for this conversation")
        if model.provider is None:
            raise TurnConfigurationError(f"Model {model.model_name} has no provider")
        return self.adapter_factory(
            ProviderSettings.from_model(model.provider), self.http_client, self.config.providers
        )

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(timeout=self.config.providers.request_timeout) as client:
            yield client

    # Request assembly

    def windowed_history(
        self, conversation: Conversation, exclude_message_id: str | None = None
    ) -> list[Message]:
        """Messages at or after the context reset marker, oldest first."""
        reset_at = conversation.context_reset_at
        return [
            m
            for m in conversation.sorted_messages
            if m.id != exclude_message_id and (reset_at is None or m.created_at >= reset_at)
        ]

    def build_request(
        self,
        session: Session,
        conversation: Conversation,
        adapter: APIAdapter,
        exclude_message_id: str | None = None,
    ) -> tuple[UnifiedChatRequest, MCPToolRegistry]:
        """Assemble the request for the next model call.

        Returns:
            The request and the registry resolving its remote tool names
        """
        history = self.windowed_history(conversation, exclude_message_id)
        memory_config = self.memory_manager.get_or_create_config(session)

        system_prompt = conversation.system_prompt or ""
        query = next(
            (m.content for m in reversed(history) if m.role == MessageRole.USER.value), ""
        )
        if memory_config.is_memory_enabled and query.strip():
            memories = self.memory_manager.retrieve_memories(session, query, conversation)
            if memories:
                system_prompt = format_memory_block(system_prompt, memories)

        messages = []
        if system_prompt.strip():
            messages.append(UnifiedMessage.plain(MessageRole.SYSTEM.value, system_prompt))
        for stored in history:
            unified = to_unified_message(stored)
            if unified is not None:
                messages.append(unified)

        registry = MCPToolRegistry()
        tools = []
        if adapter.supports_tool_calling:
            memory_tools, _ = build_memory_tools(memory_config)
            tools.extend(memory_tools)
            tools.extend(registry.install(self.mcp_manager.registered_tools(conversation)))

        request = UnifiedChatRequest(
            messages=messages,
            model=conversation.selected_model.model_name,
            temperature=conversation.temperature,
            stream=conversation.streaming_enabled,
            tools=tools,
            tool_choice=ToolChoice.AUTO if tools else ToolChoice.NONE,
        )
        return request, registry

    # Tool loop

    async def _tool_loop(
        self,
        session: Session,
        conversation: Conversation,
        message: Message,
        adapter: APIAdapter,
        cancel_event: asyncio.Event,
    ):
        max_iterations = self.config.chat.max_tool_iterations

        for iteration in range(1, max_iterations + 1):
            request, registry = self.build_request(session, conversation, adapter, message.id)
            logger.debug(
                f"Iteration {iteration}: {len(request.messages)} messages, "
                f"{len(request.tools)} tools, stream={request.stream}"
            )

            if request.stream:
                content, tool_calls = await self._stream_exchange(
                    session, adapter, request, message, cancel_event
                )
            else:
                content, tool_calls = await self._blocking_exchange(adapter, request, message)

            if cancel_event.is_set():
                message.content = content
                return

            if not tool_calls:
                message.content = content
                return

            if iteration == max_iterations:
                logger.warning(
                    f"Tool call limit of {max_iterations} reached in conversation {conversation.id}"
                )
                message.content = content or self.config.chat.tool_limit_text
                return

            for call in tool_calls:
                result = await self._dispatch_tool_call(session, conversation, call, registry)
                self._record_tool_exchange(conversation, call, result)

            message.content = ""
            message.reasoning_content = None
            message.is_streaming = True
            message.created_at = now()
            self._commit(session, "store tool results")

    async def _stream_exchange(
        self,
        session: Session,
        adapter: APIAdapter,
        request: UnifiedChatRequest,
        message: Message,
        cancel_event: asyncio.Event,
    ) -> tuple[str, list[ToolCall]]:
        content = ""
        reasoning = ""
        accumulator = ToolCallAccumulator()
        http_request = adapter.convert_request(request)

        try:
            async with self._client() as client:
                async with open_line_stream(client, http_request) as lines:
                    async for line in lines:
                        if cancel_event.is_set():
                            break
                        chunk = adapter.parse_stream_chunk(line)
                        if chunk is None:
                            continue

                        if chunk.content:
                            content += chunk.content
                            message.content = content
                        if chunk.reasoning_content:
                            reasoning += chunk.reasoning_content
                            message.reasoning_content = reasoning
                        for delta in chunk.tool_call_deltas or []:
                            if accumulator.add(delta):
                                message.content = self.config.chat.tool_status_text
                                message.is_streaming = False
                        self._save_progress(session)

                        if chunk.is_finished:
                            break
        except asyncio.CancelledError:
            # Partial text replaces the tool status shown while calls streamed
            message.content = content
            raise

        return content, accumulator.calls()

    async def _blocking_exchange(
        self, adapter: APIAdapter, request: UnifiedChatRequest, message: Message
    ) -> tuple[str, list[ToolCall]]:
        http_request = adapter.convert_request(request)
        async with self._client() as client:
            response = await send_request(client, http_request)
        parsed = adapter.parse_response(response.content)
        if parsed.reasoning_content:
            message.reasoning_content = parsed.reasoning_content
        return parsed.content, parsed.tool_calls

    async def _dispatch_tool_call(
        self,
        session: Session,
        conversation: Conversation,
        call: ToolCall,
        registry: MCPToolRegistry,
    ) -> str:
        """Execute one tool call; failures come back as text."""
        logger.info(f"Dispatching tool call {call.name}")
        try:
            if is_memory_tool(call.name):
                return execute_memory_tool(
                    self.memory_manager, session, call.name, call.arguments, conversation
                )
            tool = registry.registered_tool(call.name)
            if tool is None:
                return f"Tool not found: {call.name}"
            return await self.mcp_manager.invoke_tool(tool.descriptor.identifier, call.arguments)
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}")
            return f"Tool {call.name} failed: {e}"

    @staticmethod
    def _record_tool_exchange(conversation: Conversation, call: ToolCall, result: str):
        invocation = Message(
            role=MessageRole.ASSISTANT.value,
            content="",
            tool_call_id=call.id,
            tool_call_name=call.name,
            tool_call_arguments=call.arguments,
            created_at=now(),
        )
        tool_result = Message(
            role=MessageRole.TOOL.value,
            content=result,
            tool_call_id=call.id,
            created_at=now(),
        )
        conversation.messages.extend([invocation, tool_result])
