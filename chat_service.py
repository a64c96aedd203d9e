"""ChatService: the public entry points of the chat client.

Owns the event emitter, the tool catalog and router, the sampling bridge
and the elicitation mediator, and runs one ChatLoop at a time. It is also
the ``SessionHandlers`` that MCP connections forward server requests and
notifications to.
"""

import asyncio
import logging
import webbrowser
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional, Sequence

from catalog import ToolCatalog, ToolServer, aggregate, build_catalog
from chat_loop import ChatLoop, LoopResult, split_last_turn
from completion import CompletionProvider
from config import Settings
from elicitation import (
    ElicitationAction,
    ElicitationMediator,
    ElicitationRequest,
    UrlElicitationRequiredError,
)
from events import (
    EventEmitter,
    MessageCreated,
    NotificationReceived,
    ProgressNotification,
    ResourcesListChanged,
    ToolsListChanged,
)
from models import Attachment, Conversation, Message, MessageRole, new_id
from sampling import SamplingBridge
from store import ConversationStore, InMemoryStore
from tool_router import ToolRouter

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        provider: CompletionProvider,
        servers: Mapping[str, ToolServer],
        store: Optional[ConversationStore] = None,
        settings: Optional[Settings] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.provider = provider
        self.servers = servers
        self.store = store if store is not None else InMemoryStore()
        self.settings = settings or Settings()
        self.emitter = emitter or EventEmitter()

        self.router = ToolRouter(servers, on_url_elicitation=self._on_url_elicitation)
        self.mediator = ElicitationMediator(self.emitter.emit, self.store)
        self.sampling = SamplingBridge(
            provider,
            self.emitter.emit,
            default_model=self.settings.default_model,
            max_iterations=self.settings.sampling_max_iterations,
            tool_executor=self.router,
            auto_approve=self.settings.sampling_auto_approve,
        )

        self.active_conversation_id: Optional[str] = None
        self._loop: Optional[ChatLoop] = None
        self._background: set[asyncio.Task] = set()

    @property
    def catalog(self) -> ToolCatalog:
        return self.router.catalog

    @property
    def running(self) -> bool:
        return self._loop is not None

    async def refresh_tools(self) -> ToolCatalog:
        """Rebuild the catalog from every server and swap it in whole."""
        catalog = await aggregate(self.servers)
        self.router.catalog = catalog
        logger.info("Tool catalog rebuilt: %d tools from %d servers", len(catalog), len(self.servers))
        return catalog

    # conversations

    async def create_conversation(
        self,
        title: str = "New conversation",
        model: Optional[str] = None,
        enabled_server_ids: Optional[Sequence[str]] = None,
    ) -> Conversation:
        conversation = Conversation(
            id=new_id(),
            title=title,
            model=model or self.settings.default_model,
            enabled_server_ids=frozenset(enabled_server_ids) if enabled_server_ids is not None else None,
        )
        await self.store.save_conversation(conversation)
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        model: Optional[str] = None,
        images: Sequence[Attachment] = (),
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Append a user message and run the loop over the conversation."""
        conversation = await self._conversation(conversation_id)
        model = model or conversation.model
        if model != conversation.model:
            await self._change_model(conversation, model)

        user_message = Message.user(conversation_id, text, images=tuple(images))
        await self.store.append(user_message)
        self.emitter.emit(MessageCreated(message=user_message))
        return await self.run_agentic_loop(conversation_id, model, max_iterations=max_iterations)

    async def _change_model(self, conversation: Conversation, model: str) -> None:
        await self.store.save_conversation(replace(conversation, model=model))
        marker = Message.model_change(conversation.id, model)
        await self.store.append(marker)
        self.emitter.emit(MessageCreated(message=marker))

    async def _conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation {conversation_id}")
        return conversation

    # agentic loop

    def _router_for(self, conversation: Optional[Conversation]) -> ToolRouter:
        if conversation is None or conversation.enabled_server_ids is None:
            return self.router
        enabled = {
            sid: server for sid, server in self.servers.items() if conversation.server_enabled(sid)
        }
        listings = {
            sid: [t for t in self.catalog.tools if t.owner_server_id == sid] for sid in enabled
        }
        return ToolRouter(enabled, build_catalog(listings), on_url_elicitation=self._on_url_elicitation)

    async def run_agentic_loop(
        self,
        conversation_id: str,
        model: str,
        messages: Optional[Sequence[Message]] = None,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Run the loop for a conversation.

        ``messages`` defaults to the stored history. New messages are
        persisted to the store as each turn completes.
        """
        if self._loop is not None:
            raise RuntimeError("A chat loop is already running")
        if messages is None:
            messages = await self.store.messages(conversation_id)
        conversation = await self.store.get_conversation(conversation_id)

        loop = ChatLoop(
            self.provider,
            self._router_for(conversation),
            self.emitter,
            store=self.store,
            system_prompt=self.settings.system_prompt,
        )
        self._loop = loop
        self.active_conversation_id = conversation_id
        self.sampling.preferred_model = model
        try:
            return await loop.run(
                conversation_id,
                model,
                messages,
                max_iterations=max_iterations if max_iterations is not None else self.settings.max_iterations,
            )
        finally:
            self._loop = None

    def cancel(self) -> None:
        if self._loop is not None:
            self._loop.cancel()

    async def regenerate(
        self,
        conversation_id: str,
        model: Optional[str] = None,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Drop the answer to the last user message and produce a new one."""
        conversation = await self._conversation(conversation_id)
        kept, removed = split_last_turn(await self.store.messages(conversation_id))
        if not any(m.role == MessageRole.USER for m in kept):
            raise ValueError("Nothing to regenerate: conversation has no user message")
        if removed:
            await self.store.delete(conversation_id, [m.id for m in removed])
        return await self.run_agentic_loop(
            conversation_id,
            model or conversation.model,
            messages=kept,
            max_iterations=max_iterations,
        )

    # sampling

    async def process_sampling_request(self, request: dict, preferred_model: Optional[str] = None) -> dict:
        return await self.sampling.process_sampling_request(request, preferred_model)

    async def approve_sampling(self, request_id: str, edited_params: Optional[dict] = None) -> dict:
        return await self.sampling.approve(request_id, edited_params)

    def reject_sampling(self, request_id: str) -> None:
        self.sampling.reject(request_id)

    async def handle_sampling(self, server_id: str, request_id: Any, params: dict) -> dict:
        # request ids are only unique per server
        return await self.sampling.handle_request(server_id, f"{server_id}:{request_id}", params)

    # elicitation

    async def handle_elicitation(self, server_id: str, request_id: Any, params: dict) -> dict:
        request = ElicitationRequest.from_json({"id": f"{server_id}:{request_id}", "params": params})
        return await self.mediator.request(request, self.active_conversation_id)

    async def submit_elicitation_response(
        self,
        request_id: str,
        action: ElicitationAction | str,
        content: Optional[dict] = None,
    ) -> dict:
        return await self.mediator.respond(request_id, action, content)

    async def resolve_url_elicitation(
        self,
        request_id: str,
        confirmed_url: Optional[str],
        opener: Callable[[str], Any] = webbrowser.open,
    ) -> dict:
        return await self.mediator.resolve_url(request_id, confirmed_url, opener)

    async def _on_url_elicitation(self, error: UrlElicitationRequiredError) -> None:
        await self.mediator.register_error(error, self.active_conversation_id)

    # notifications

    async def handle_notification(
        self,
        server_id: str,
        server_name: str,
        method: str,
        params: Optional[dict],
    ) -> None:
        params = params or {}
        match method:
            case "notifications/progress":
                self.emitter.emit(ProgressNotification(
                    server_id=server_id,
                    progress=params.get("progress", 0),
                    total=params.get("total"),
                    message=params.get("message"),
                    progress_token=params.get("progressToken"),
                ))
            case "notifications/tools/list_changed":
                self.emitter.emit(ToolsListChanged(server_id=server_id))
                # listing tools from inside the session's receive loop would block it
                task = asyncio.create_task(self.refresh_tools())
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            case "notifications/resources/list_changed":
                self.emitter.emit(ResourcesListChanged(server_id=server_id))
            case _:
                await self._record_notification(server_id, server_name, method, params)

    async def _record_notification(
        self, server_id: str, server_name: str, method: str, params: dict
    ) -> None:
        self.emitter.emit(NotificationReceived(
            server_id=server_id,
            server_name=server_name,
            method=method,
            params=params,
        ))
        if self.active_conversation_id is None:
            return
        message = Message(
            conversation_id=self.active_conversation_id,
            role=MessageRole.NOTIFICATION,
            notification={
                "server_id": server_id,
                "server_name": server_name,
                "method": method,
                "params": params,
            },
        )
        await self.store.append(message)
        self.emitter.emit(MessageCreated(message=message))

    async def aclose(self) -> None:
        self.cancel()
        self.mediator.cancel_all()
        for task in list(self._background):
            task.cancel()
        self.emitter.close()
