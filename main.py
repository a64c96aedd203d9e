"""MCP Chat: terminal chat client for MCP servers.

Connects to the servers in mcp_config.json, then runs the agentic loop
for each line typed. Tool calls, server notifications, sampling approvals
and elicitation forms are shown inline; when the client needs an answer
(approve a sampling request, fill in a form), the next line typed goes to
that question instead of the chat.
"""

import argparse
import asyncio
import logging
import traceback
from collections import deque
from typing import Optional

from dotenv import load_dotenv

from chat_service import ChatService
from config import Settings, configure_logging, load_server_configs
from elicitation import (
    ElicitationAction,
    ElicitationMode,
    ElicitationRequest,
    ElicitationValidationError,
    FormFieldType,
)
from events import (
    AuthenticationRequired,
    ChatEvent,
    ContentChunk,
    ConversationComplete,
    ElicitationRequestReceived,
    ErrorOccurred,
    MaxIterationsReached,
    NotificationReceived,
    ProgressNotification,
    ReasoningChunk,
    SamplingRequestReceived,
    StreamingStarted,
    ToolExecutionFinished,
    ToolExecutionStarted,
    ToolsListChanged,
)
from gemini import GeminiProvider
from mcp_handler import MCPClient
from openrouter import OpenRouterProvider

logger = logging.getLogger(__name__)

RESULT_PREVIEW = 300

HELP = """\
commands:
  /cancel         stop the running response
  /regen          regenerate the last answer
  /model NAME     switch model for the next message
  /tools          list available tools
  q               quit"""


def build_provider(settings: Settings):
    match settings.provider:
        case "gemini":
            return GeminiProvider(api_key=settings.gemini_api_key)
        case _:
            if not settings.openrouter_api_key:
                raise SystemExit("OPENROUTER_API_KEY is not set")
            return OpenRouterProvider(
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
            )


def _preview(text: str) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= RESULT_PREVIEW else text[:RESULT_PREVIEW] + "..."


def coerce_field_value(field_type: FormFieldType, raw: str):
    """Turn a typed line into the value a form field expects."""
    raw = raw.strip()
    match field_type:
        case FormFieldType.BOOLEAN:
            return raw.lower() in ("y", "yes", "true", "1")
        case FormFieldType.INTEGER:
            try:
                return int(raw)
            except ValueError:
                return raw
        case FormFieldType.NUMBER:
            try:
                return float(raw)
            except ValueError:
                return raw
        case FormFieldType.MULTI_SELECT:
            return [item.strip() for item in raw.split(",") if item.strip()]
        case _:
            return raw


class Question:
    """Something waiting for the user's next line."""

    prompt = ""

    async def answer(self, line: str) -> bool:
        """Handle a line. Returns True once the question is settled."""
        raise NotImplementedError


class SamplingQuestion(Question):
    def __init__(self, service: ChatService, request_id: str):
        self.service = service
        self.request_id = request_id
        self.prompt = "[sampling] approve? [y/N] "

    async def answer(self, line: str) -> bool:
        if line.strip().lower() not in ("y", "yes"):
            self.service.reject_sampling(self.request_id)
            print("[sampling] rejected")
            return True
        try:
            response = await self.service.approve_sampling(self.request_id)
        except Exception as e:
            print(f"[sampling] failed: {e}")
            return True
        print(f"[sampling] sent response ({response.get('stopReason')})")
        return True


class UrlQuestion(Question):
    def __init__(self, service: ChatService, request: ElicitationRequest):
        self.service = service
        self.request = request
        self.prompt = "[elicitation] open this URL? [y/N] "

    async def answer(self, line: str) -> bool:
        confirmed = self.request.url if line.strip().lower() in ("y", "yes") else None
        response = await self.service.resolve_url_elicitation(self.request.id, confirmed)
        print(f"[elicitation] {response['result']['action']}")
        return True


class FormQuestion(Question):
    """Walks through the form fields one line at a time."""

    def __init__(self, service: ChatService, request: ElicitationRequest):
        self.service = service
        self.request = request
        self.fields = request.form.fields
        self.values = request.form.initial_values()
        self.index: Optional[int] = None
        self.prompt = "[elicitation] [a]ccept, [d]ecline or [c]ancel? "

    def _field_prompt(self) -> str:
        form_field = self.fields[self.index]
        hint = f" ({', '.join(form_field.enum_values)})" if form_field.enum_values else ""
        marker = "*" if form_field.required else ""
        return f"  {form_field.label}{marker} [{form_field.type.value}]{hint}: "

    async def answer(self, line: str) -> bool:
        if self.index is None:
            choice = line.strip().lower()[:1]
            if choice == "d":
                await self.service.submit_elicitation_response(self.request.id, ElicitationAction.DECLINE)
                print("[elicitation] declined")
                return True
            if choice != "a":
                await self.service.submit_elicitation_response(self.request.id, ElicitationAction.CANCEL)
                print("[elicitation] cancelled")
                return True
            self.index = 0
        else:
            form_field = self.fields[self.index]
            if line.strip():
                self.values[form_field.name] = coerce_field_value(form_field.type, line)
            self.index += 1

        if self.index < len(self.fields):
            self.prompt = self._field_prompt()
            return False

        content = {k: v for k, v in self.values.items() if v is not None}
        try:
            await self.service.submit_elicitation_response(
                self.request.id, ElicitationAction.ACCEPT, content
            )
        except ElicitationValidationError as e:
            for name, error in e.errors.items():
                print(f"  {name}: {error}")
            self.index = 0
            self.prompt = self._field_prompt()
            return False
        print("[elicitation] accepted")
        return True


class ChatCLI:
    def __init__(self, settings: Settings, show_reasoning: bool = False):
        self.settings = settings
        self.show_reasoning = show_reasoning
        self.model = settings.default_model

        self.mcp_client = MCPClient(load_server_configs(settings.mcp_config))
        self.service = ChatService(build_provider(settings), self.mcp_client.connections, settings=settings)
        self.mcp_client.handlers = self.service

        self.questions: deque[Question] = deque()
        self.conversation_id: Optional[str] = None
        self._printed = 0
        self._run_task: Optional[asyncio.Task] = None

    def on_event(self, event: ChatEvent) -> None:
        match event:
            case StreamingStarted():
                self._printed = 0
            case ContentChunk(content=content):
                print(content[self._printed:], end="", flush=True)
                self._printed = len(content)
            case ReasoningChunk(content=content) if self.show_reasoning:
                print(f"\r[thinking] {_preview(content)}", end="", flush=True)
            case ToolExecutionStarted(tool_name=name, server_id=server_id):
                print(f"\n[tool] {name} -> {server_id or '?'}")
            case ToolExecutionFinished(tool_name=name, result=result, is_error=True):
                print(f"[tool] {name} error: {_preview(result)}")
            case ToolExecutionFinished(tool_name=name, result=result):
                print(f"[tool] {name} result: {_preview(result)}")
            case SamplingRequestReceived(request_id=request_id, server_id=server_id, params=params):
                messages = params.get("messages") or []
                last = messages[-1].get("content") if messages else None
                text = last.get("text", "") if isinstance(last, dict) else str(last or "")
                print(f"\n[sampling] {server_id} asks for a completion: {_preview(text)}")
                self._ask(SamplingQuestion(self.service, request_id))
            case ElicitationRequestReceived(request=request):
                print(f"\n[elicitation] {request.message}")
                if request.mode == ElicitationMode.URL:
                    print(f"  {request.url}")
                    self._ask(UrlQuestion(self.service, request))
                else:
                    self._ask(FormQuestion(self.service, request))
            case ProgressNotification(server_id=server_id, message=message) if event.percentage is not None:
                print(f"\n[mcp] {server_id}: {event.percentage:.0f}% {message or ''}")
            case ToolsListChanged(server_id=server_id):
                print(f"\n[mcp] {server_id}: tools changed, refreshing")
            case NotificationReceived(server_name=name, method=method):
                print(f"\n[mcp] {name}: {method}")
            case AuthenticationRequired(provider=provider):
                print(f"\n[auth] {provider} rejected the API key")
            case ErrorOccurred(message=message) if event.payment_required:
                print(f"\n[error] insufficient credits: {message}")
            case ErrorOccurred(message=message):
                print(f"\n[error] {message}")
            case MaxIterationsReached(iterations=iterations):
                print(f"\n[chat] stopped after {iterations} iterations")
            case ConversationComplete():
                print()

    def _ask(self, question: Question) -> None:
        self.questions.append(question)
        if len(self.questions) == 1:
            print(question.prompt, end="", flush=True)

    async def _run(self, coro) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Chat run failed")

    def _start(self, tg: asyncio.TaskGroup, coro) -> None:
        if self._run_task is not None and not self._run_task.done():
            coro.close()
            print("[chat] still answering, /cancel to stop")
            return
        self._run_task = tg.create_task(self._run(coro))

    async def send_text(self, tg: asyncio.TaskGroup) -> None:
        while True:
            prompt = self.questions[0].prompt if self.questions else "message > "
            try:
                line = await asyncio.to_thread(input, prompt)
            except EOFError:
                break

            if self.questions:
                question = self.questions[0]
                if await question.answer(line):
                    self.questions.popleft()
                continue

            text = line.strip()
            if text.lower() == "q":
                break
            if not text:
                continue
            if text == "/help":
                print(HELP)
            elif text == "/cancel":
                self.service.cancel()
            elif text == "/tools":
                for tool in self.service.catalog.tools:
                    print(f"  - {tool.name} ({tool.owner_server_id})")
            elif text.startswith("/model"):
                name = text[len("/model"):].strip()
                if name:
                    self.model = name
                print(f"[chat] model: {self.model}")
            elif text == "/regen":
                self._start(tg, self.service.regenerate(self.conversation_id, self.model))
            else:
                self._start(tg, self.service.send_message(self.conversation_id, text, self.model))

    async def run(self):
        await self.mcp_client.connect()
        catalog = await self.service.refresh_tools()
        print(f"\n[mcp] {len(self.mcp_client.connections)} servers, {len(catalog)} tools")
        for tool in catalog.tools:
            print(f"  - {tool.name}")

        conversation = await self.service.create_conversation(model=self.model)
        self.conversation_id = conversation.id
        remove_listener = self.service.emitter.add_listener(self.on_event)

        try:
            async with asyncio.TaskGroup() as tg:
                await self.send_text(tg)
                raise asyncio.CancelledError("User requested exit")

        except asyncio.CancelledError:
            pass
        except ExceptionGroup as EG:
            traceback.print_exception(EG)
        finally:
            remove_listener()
            await self.service.aclose()
            await self.mcp_client.close()
            aclose = getattr(self.service.provider, "aclose", None)
            if aclose is not None:
                await aclose()


def cli():
    parser = argparse.ArgumentParser(description="MCP Chat: agentic chat over MCP servers")
    parser.add_argument("--provider", choices=["openrouter", "gemini"], help="completion provider")
    parser.add_argument("--model", help="model id (default: DEFAULT_MODEL)")
    parser.add_argument("--config", help="path to mcp_config.json")
    parser.add_argument("--max-iterations", type=int, help="tool-loop iteration cap")
    parser.add_argument(
        "--auto-approve-sampling",
        action="store_true",
        help="run server sampling requests without asking",
    )
    parser.add_argument("--reasoning", action="store_true", help="show model reasoning")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args()

    # exported for libraries that read their own keys (google-genai)
    load_dotenv()
    overrides = {
        "provider": args.provider,
        "default_model": args.model,
        "mcp_config": args.config,
        "max_iterations": args.max_iterations,
        "log_level": args.log_level,
        "sampling_auto_approve": args.auto_approve_sampling or None,
    }
    settings = Settings(**{k: v for k, v in overrides.items() if v is not None})

    configure_logging(settings.log_level)
    asyncio.run(ChatCLI(settings, show_reasoning=args.reasoning).run())


if __name__ == "__main__":
    cli()
