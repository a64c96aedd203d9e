"""Elicitation: server-initiated requests for user input.

A server asks either for a form (described by a flat JSON Schema) or for
the user to visit a URL. Every request moves from pending to exactly one
of accepted, declined or cancelled, and the outcome is written back to
the conversation so history can be shown without asking again.
"""

import asyncio
import logging
import math
import re
import uuid
import webbrowser
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from errors import ChatClientError, ProtocolFormatError
from events import ElicitationRequestReceived
from models import Message, MessageRole

logger = logging.getLogger(__name__)

# MCP error code for "URL elicitation required"
URL_ELICITATION_REQUIRED = -32042

# resolved request ids remembered to refuse a second resolution
RESOLVED_HISTORY = 1024

_EMAIL_RE = re.compile(r"^[\w\-.]+@([\w-]+\.)+[\w-]{2,4}$")


class ElicitationAction(Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"

    @classmethod
    def from_string(cls, value: str) -> "ElicitationAction":
        try:
            return cls(value)
        except ValueError:
            return cls.CANCEL


class ElicitationMode(Enum):
    FORM = "form"
    URL = "url"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ElicitationMode":
        try:
            return cls(value)
        except ValueError:
            return cls.FORM


class FormFieldType(Enum):
    TEXT = "text"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"

    @classmethod
    def from_schema(cls, schema: dict) -> "FormFieldType":
        match schema.get("type"):
            case "boolean":
                return cls.BOOLEAN
            case "number":
                return cls.NUMBER
            case "integer":
                return cls.INTEGER
            case "array":
                return cls.MULTI_SELECT
        if "enum" in schema or "oneOf" in schema:
            return cls.SINGLE_SELECT
        return cls.TEXT


def _options(values: list) -> tuple[list[str], dict[str, str]]:
    """Read ``[{const, title}]`` options into values and value->title."""
    enum_values: list[str] = []
    titles: dict[str, str] = {}
    for option in values:
        value = str(option.get("const"))
        enum_values.append(value)
        if "title" in option:
            titles[value] = option["title"]
    return enum_values, titles


@dataclass(frozen=True)
class ElicitationFormField:
    name: str
    type: FormFieldType
    schema: dict = field(default_factory=dict)
    title: Optional[str] = None
    description: Optional[str] = None
    required: bool = False
    default_value: Any = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    format: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    enum_values: Optional[list[str]] = None
    enum_titles: Optional[dict[str, str]] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None

    @classmethod
    def from_schema(cls, name: str, schema: dict, required: bool) -> "ElicitationFormField":
        field_type = FormFieldType.from_schema(schema)
        enum_values = enum_titles = None

        if "enum" in schema:
            enum_values = [str(v) for v in schema["enum"]]
        elif "oneOf" in schema:
            enum_values, enum_titles = _options(schema["oneOf"])
        elif field_type == FormFieldType.MULTI_SELECT:
            items = schema.get("items") or {}
            if "enum" in items:
                enum_values = [str(v) for v in items["enum"]]
            elif "anyOf" in items:
                enum_values, enum_titles = _options(items["anyOf"])

        return cls(
            name=name,
            type=field_type,
            schema=schema,
            title=schema.get("title"),
            description=schema.get("description"),
            required=required,
            default_value=schema.get("default"),
            min_length=schema.get("minLength"),
            max_length=schema.get("maxLength"),
            pattern=schema.get("pattern"),
            format=schema.get("format"),
            minimum=schema.get("minimum"),
            maximum=schema.get("maximum"),
            enum_values=enum_values,
            enum_titles=enum_titles,
            min_items=schema.get("minItems"),
            max_items=schema.get("maxItems"),
        )

    @property
    def label(self) -> str:
        return self.title or self.name

    def validate(self, value: Any) -> Optional[str]:
        """Return an error message for ``value``, or None if it is valid."""
        if value is None or value == "":
            return "This field is required" if self.required else None

        match self.type:
            case FormFieldType.TEXT:
                return self._validate_text(value)
            case FormFieldType.NUMBER | FormFieldType.INTEGER:
                return self._validate_number(value)
            case FormFieldType.BOOLEAN:
                if not isinstance(value, bool):
                    return "Must be true or false"
            case FormFieldType.SINGLE_SELECT:
                if self.enum_values is not None and str(value) not in self.enum_values:
                    return f"Must be one of: {', '.join(self.enum_values)}"
            case FormFieldType.MULTI_SELECT:
                return self._validate_multi(value)
        return None

    def _validate_text(self, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return "Must be a string"
        if self.min_length is not None and len(value) < self.min_length:
            return f"Minimum length is {self.min_length}"
        if self.max_length is not None and len(value) > self.max_length:
            return f"Maximum length is {self.max_length}"
        if self.pattern is not None and not re.search(self.pattern, value):
            return "Does not match required pattern"
        match self.format:
            case "email":
                if not _EMAIL_RE.match(value):
                    return "Must be a valid email address"
            case "uri":
                if not urlparse(value).scheme:
                    return "Must be a valid URI"
            case "date":
                try:
                    date.fromisoformat(value)
                except ValueError:
                    return "Must be a valid date"
            case "date-time":
                try:
                    datetime.fromisoformat(value)
                except ValueError:
                    return "Must be a valid date-time"
        return None

    def _validate_number(self, value: Any) -> Optional[str]:
        if isinstance(value, bool):
            number = None
        else:
            try:
                number = float(value)
            except (TypeError, ValueError, OverflowError):
                number = None
        if number is None or not math.isfinite(number):
            return "Must be an integer" if self.type == FormFieldType.INTEGER else "Must be a number"
        if self.type == FormFieldType.INTEGER and not number.is_integer():
            return "Must be an integer"
        if self.minimum is not None and number < self.minimum:
            return f"Minimum value is {self.minimum}"
        if self.maximum is not None and number > self.maximum:
            return f"Maximum value is {self.maximum}"
        return None

    def _validate_multi(self, value: Any) -> Optional[str]:
        if not isinstance(value, list):
            return "Must be a list"
        if self.min_items is not None and len(value) < self.min_items:
            return f"Must select at least {self.min_items} items"
        if self.max_items is not None and len(value) > self.max_items:
            return f"Must select at most {self.max_items} items"
        if self.enum_values is not None:
            for item in value:
                if str(item) not in self.enum_values:
                    return f"Invalid option: {item}"
        return None


@dataclass(frozen=True)
class ElicitationForm:
    fields: tuple[ElicitationFormField, ...] = ()

    @classmethod
    def from_schema(cls, schema: Optional[dict]) -> "ElicitationForm":
        schema = schema or {}
        required = set(schema.get("required") or [])
        return cls(fields=tuple(
            ElicitationFormField.from_schema(name, field_schema, name in required)
            for name, field_schema in (schema.get("properties") or {}).items()
        ))

    def initial_values(self) -> dict[str, Any]:
        return {f.name: f.default_value for f in self.fields if f.default_value is not None}

    def validate_all(self, values: dict[str, Any]) -> dict[str, str]:
        """Validate every field. Returns field name -> error for failures."""
        errors = {}
        for form_field in self.fields:
            error = form_field.validate(values.get(form_field.name))
            if error is not None:
                errors[form_field.name] = error
        return errors


@dataclass(frozen=True)
class ElicitationRequest:
    id: str  # JSON-RPC request id
    mode: ElicitationMode
    message: str
    elicitation_id: Optional[str] = None  # url mode
    url: Optional[str] = None  # url mode
    requested_schema: Optional[dict] = None  # form mode

    @classmethod
    def from_json(cls, raw: dict) -> "ElicitationRequest":
        params = raw.get("params")
        if not isinstance(params, dict) or not isinstance(params.get("message"), str):
            raise ProtocolFormatError("Elicitation request needs params.message")
        return cls(
            id=str(raw.get("id")),
            mode=ElicitationMode.from_string(params.get("mode")),
            message=params["message"],
            elicitation_id=params.get("elicitationId"),
            url=params.get("url"),
            requested_schema=params.get("requestedSchema"),
        )

    @property
    def form(self) -> ElicitationForm:
        return ElicitationForm.from_schema(self.requested_schema)

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "message": self.message,
            "elicitationId": self.elicitation_id,
            "url": self.url,
            "requestedSchema": self.requested_schema,
        }

    def to_response_json(
        self,
        action: ElicitationAction,
        content: Optional[dict[str, Any]] = None,
    ) -> dict:
        result: dict[str, Any] = {"action": action.value}
        if action == ElicitationAction.ACCEPT and content:
            result["content"] = content
        return {"jsonrpc": "2.0", "id": self.id, "result": result}


class UrlElicitationRequiredError(ChatClientError):
    """A server refused a call until the user completes URL elicitations."""

    def __init__(self, message: str, elicitations: list[ElicitationRequest]):
        super().__init__(message)
        self.message = message
        self.elicitations = elicitations

    @classmethod
    def from_error(cls, error_data: dict) -> "UrlElicitationRequiredError":
        """Parse a JSON-RPC error object ``{code, message, data}``."""
        data = error_data.get("data") or {}
        elicitations = []
        for params in data.get("elicitations") or []:
            try:
                elicitations.append(ElicitationRequest.from_json({
                    "id": f"error-{uuid.uuid4().hex[:12]}",
                    "params": {"mode": "url", **params},
                }))
            except ProtocolFormatError as e:
                logger.warning("Skipping malformed URL elicitation: %s", e)
        return cls(
            message=error_data.get("message") or "URL elicitation required",
            elicitations=elicitations,
        )

    def __str__(self) -> str:
        return (
            f"UrlElicitationRequiredError: {self.message} "
            f"({len(self.elicitations)} elicitations required)"
        )


class ElicitationValidationError(ChatClientError):
    def __init__(self, errors: dict[str, str]):
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors


class ElicitationAlreadyResolvedError(ChatClientError):
    pass


@dataclass
class _Pending:
    request: ElicitationRequest
    future: asyncio.Future
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class ElicitationMediator:
    """Tracks outstanding elicitation requests and resolves them."""

    def __init__(self, emit: Callable, store=None):
        self._emit = emit
        self._store = store
        self._pending: dict[str, _Pending] = {}
        # ids of recently resolved requests, oldest first
        self._resolved: OrderedDict[str, None] = OrderedDict()

    @property
    def pending(self) -> list[ElicitationRequest]:
        return [p.request for p in self._pending.values()]

    async def register(
        self,
        request: ElicitationRequest,
        conversation_id: Optional[str] = None,
    ) -> asyncio.Future:
        """Start tracking a request and announce it. Returns its future."""
        if request.id in self._resolved:
            raise ElicitationAlreadyResolvedError(f"Elicitation {request.id} already resolved")
        if request.id in self._pending:
            return self._pending[request.id].future

        pending = _Pending(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            conversation_id=conversation_id,
        )
        if self._store is not None and conversation_id is not None:
            message = Message(
                conversation_id=conversation_id,
                role=MessageRole.ELICITATION,
                content=request.message,
                elicitation=request.to_json(),
            )
            await self._store.append(message)
            pending.message_id = message.id

        self._pending[request.id] = pending
        self._emit(ElicitationRequestReceived(request=request, message_id=pending.message_id))
        return pending.future

    async def request(
        self,
        request: ElicitationRequest,
        conversation_id: Optional[str] = None,
    ) -> dict:
        """Register a request and wait for the user's response."""
        future = await self.register(request, conversation_id)
        return await future

    async def register_error(
        self,
        error: UrlElicitationRequiredError,
        conversation_id: Optional[str] = None,
    ) -> list[ElicitationRequest]:
        """Feed an out-of-band URL elicitation error into the normal path."""
        for request in error.elicitations:
            await self.register(request, conversation_id)
        return error.elicitations

    async def respond(
        self,
        request_id: str,
        action: ElicitationAction | str,
        content: Optional[dict[str, Any]] = None,
    ) -> dict:
        """Resolve a pending request and return the JSON-RPC response.

        Raises:
            ElicitationValidationError: accepting a form whose content fails
                validation. The request stays pending.
        """
        if isinstance(action, str):
            action = ElicitationAction.from_string(action)
        if request_id in self._resolved:
            raise ElicitationAlreadyResolvedError(f"Elicitation {request_id} already resolved")
        pending = self._pending.get(request_id)
        if pending is None:
            raise KeyError(f"No pending elicitation {request_id}")

        request = pending.request
        if action == ElicitationAction.ACCEPT and request.mode == ElicitationMode.FORM:
            errors = request.form.validate_all(content or {})
            if errors:
                raise ElicitationValidationError(errors)

        response = request.to_response_json(action, content)
        del self._pending[request_id]
        self._mark_resolved(request_id)
        await self._record_outcome(pending, response["result"])
        if not pending.future.done():
            pending.future.set_result(response)
        logger.info("Elicitation %s resolved: %s", request_id, action.value)
        return response

    async def resolve_url(
        self,
        request_id: str,
        confirmed_url: Optional[str],
        opener: Callable[[str], Any] = webbrowser.open,
    ) -> dict:
        """Resolve a URL-mode request.

        ``confirmed_url`` is the destination the user approved; None or a
        different URL declines. A failure to open the URL cancels.
        """
        pending = self._pending.get(request_id)
        if pending is None:
            raise KeyError(f"No pending elicitation {request_id}")
        url = pending.request.url
        if not url or confirmed_url != url:
            return await self.respond(request_id, ElicitationAction.DECLINE)
        try:
            opened = opener(url)
        except Exception as e:
            logger.warning("Could not open %s: %s", url, e)
            opened = False
        if opened is False:
            return await self.respond(request_id, ElicitationAction.CANCEL)
        return await self.respond(request_id, ElicitationAction.ACCEPT)

    def cancel_all(self) -> None:
        """Cancel every pending request, e.g. when the server disconnects."""
        for pending in list(self._pending.values()):
            response = pending.request.to_response_json(ElicitationAction.CANCEL)
            self._mark_resolved(pending.request.id)
            if not pending.future.done():
                pending.future.set_result(response)
        self._pending.clear()

    def _mark_resolved(self, request_id: str) -> None:
        self._resolved[request_id] = None
        while len(self._resolved) > RESOLVED_HISTORY:
            self._resolved.popitem(last=False)

    async def _record_outcome(self, pending: _Pending, result: dict) -> None:
        if self._store is None or pending.message_id is None:
            return
        message = await self._store.get(pending.conversation_id, pending.message_id)
        if message is None:
            return
        data = dict(message.elicitation or pending.request.to_json())
        data["action"] = result["action"]
        if "content" in result:
            data["content"] = result["content"]
        await self._store.update(replace(message, elicitation=data))
