"""
Capability Registry

External collaborators the orchestration core calls but never implements
inline: action capabilities ``fn(parameters, context) -> output``,
evaluator capabilities ``fn(parameters) -> result`` and a notify
capability ``fn(payload) -> ok``. Capabilities may be plain functions or
coroutines; plain functions run in a worker thread.
"""

import asyncio
import inspect
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog

from secauto.config.settings import Settings
from secauto.orchestrator.errors import CapabilityError, StepTimeoutError
from secauto.store.models import ActionType, ResponseActionType

logger = structlog.get_logger(__name__)

ActionCapability = Callable[[dict[str, Any], dict[str, Any]], Union[Any, Awaitable[Any]]]
EvaluatorCapability = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]
NotifyCapability = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    # Plain functions run off the event loop
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CapabilityRegistry:
    """
    Registry of injected capabilities, resolved at startup.

    Action names are the playbook ``ActionType`` values and the automated
    response ``ResponseActionType`` values; evaluators are looked up by
    the name a policy, compliance check or assessment references.
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionCapability] = {}
        self._evaluators: dict[str, EvaluatorCapability] = {}
        self._notifier: Optional[NotifyCapability] = None

    # === Registration ===

    def register_action(self, name: Union[str, ActionType, ResponseActionType], fn: ActionCapability) -> None:
        """Register (or replace) an action capability."""
        self._actions[getattr(name, "value", name)] = fn

    def register_evaluator(self, name: str, fn: EvaluatorCapability) -> None:
        """Register (or replace) an evaluator capability."""
        self._evaluators[name] = fn

    def set_notifier(self, fn: NotifyCapability) -> None:
        """Set the notify capability."""
        self._notifier = fn

    def has_action(self, name: Union[str, ActionType, ResponseActionType]) -> bool:
        return getattr(name, "value", name) in self._actions

    # === Invocation ===

    async def invoke_action(
        self,
        name: Union[str, ActionType, ResponseActionType],
        parameters: dict[str, Any],
        context: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run an action capability.

        Raises:
            CapabilityError: The capability is unknown or raised.
            StepTimeoutError: The capability exceeded ``timeout``.
        """
        key = getattr(name, "value", name)
        fn = self._actions.get(key)
        if fn is None:
            raise CapabilityError(f"No capability registered for action '{key}'", capability=key)
        return await self._guarded(key, fn, timeout, parameters, context)

    async def invoke_evaluator(
        self,
        name: str,
        parameters: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Run an evaluator capability."""
        fn = self._evaluators.get(name)
        if fn is None:
            raise CapabilityError(f"No evaluator registered under '{name}'", capability=name)
        return await self._guarded(name, fn, timeout, parameters)

    async def notify(self, payload: dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Send a payload through the notify capability."""
        if self._notifier is None:
            raise CapabilityError("No notify capability configured", capability="notify")
        return await self._guarded("notify", self._notifier, timeout, payload)

    async def _guarded(
        self,
        name: str,
        fn: Callable[..., Any],
        timeout: Optional[float],
        *args: Any,
    ) -> Any:
        try:
            if timeout:
                return await asyncio.wait_for(_call(fn, *args), timeout=timeout)
            return await _call(fn, *args)
        except asyncio.TimeoutError:
            raise StepTimeoutError(name, timeout or 0) from None
        except CapabilityError:
            raise
        except Exception as e:
            raise CapabilityError(
                f"{name} failed: {e}",
                capability=name,
                original_error=e,
            ) from e


# ============================================================================
# Built-in capabilities
# ============================================================================

def _http_request(client: httpx.AsyncClient) -> ActionCapability:
    async def handler(parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        url = parameters.get("url")
        if not url:
            raise ValueError("http_request requires a 'url' parameter")
        response = await client.request(
            parameters.get("method", "GET").upper(),
            url,
            headers=parameters.get("headers"),
            params=parameters.get("params"),
            json=parameters.get("json"),
            content=parameters.get("body"),
        )
        expected = parameters.get("expected_status")
        if expected is not None and response.status_code != int(expected):
            raise ValueError(f"Expected HTTP {expected}, got {response.status_code}")
        response.raise_for_status()
        return {"status_code": response.status_code, "body": _response_body(response)}
    return handler


def _api_call(client: httpx.AsyncClient, base_url: Optional[str]) -> ActionCapability:
    async def handler(parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        if not base_url:
            raise ValueError("api_call requires SECAUTO_API_BASE_URL to be configured")
        endpoint = parameters.get("endpoint", "")
        response = await client.request(
            parameters.get("method", "POST").upper(),
            f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}",
            json=parameters.get("payload", {}),
        )
        response.raise_for_status()
        return {"status_code": response.status_code, "body": _response_body(response)}
    return handler


async def _run_script(root: Path, parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    script = parameters.get("script")
    if not script:
        raise ValueError("script requires a 'script' parameter")
    path = (root / script).resolve()
    if root not in path.parents:
        raise ValueError(f"Script {script!r} is outside {root}")
    if not path.is_file():
        raise FileNotFoundError(f"Script not found: {path}")

    env = dict(os.environ)
    env["SECAUTO_CONTEXT"] = json.dumps(context, default=str)
    process = await asyncio.create_subprocess_exec(
        str(path),
        *[str(arg) for arg in parameters.get("args", [])],
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await asyncio.shield(process.wait())
        raise
    return {
        "returncode": process.returncode,
        "stdout": stdout.decode(errors="replace"),
        "stderr": stderr.decode(errors="replace"),
    }


def _script(scripts_dir: str) -> ActionCapability:
    root = Path(scripts_dir).resolve()

    async def handler(parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        result = await _run_script(root, parameters, context)
        if result["returncode"] != 0:
            raise RuntimeError(
                f"Script {parameters['script']} exited with {result['returncode']}: {result['stderr'][:200]}"
            )
        return result
    return handler


def _compliance_script(scripts_dir: str) -> EvaluatorCapability:
    """
    Evaluator running a check script.

    A JSON object on stdout is the result; otherwise the exit status
    decides compliance and stdout becomes the evidence.
    """
    root = Path(scripts_dir).resolve()

    async def evaluate(parameters: dict[str, Any]) -> dict[str, Any]:
        result = await _run_script(root, parameters, {"parameters": parameters})
        try:
            parsed = json.loads(result["stdout"])
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        return {
            "compliant": result["returncode"] == 0,
            "evidence": [line for line in result["stdout"].splitlines() if line.strip()],
        }
    return evaluate


def _webhook_notifier(client: httpx.AsyncClient, url: str) -> NotifyCapability:
    async def notify(payload: dict[str, Any]) -> bool:
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return True
    return notify


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def register_builtin_capabilities(
    registry: CapabilityRegistry,
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> httpx.AsyncClient:
    """
    Register the capabilities that ship with the engine.

    ``block_ip``, ``quarantine_user``, ``isolate_system``,
    ``collect_evidence``, ``database_query`` and ``file_operation`` are
    environment specific and must be injected by the host, as must the
    ``policy_state`` and ``vulnerability_scanner`` evaluators.

    Returns:
        The HTTP client backing the capabilities; the caller closes it.
    """
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout))

    registry.register_action(ActionType.HTTP_REQUEST, _http_request(client))
    registry.register_action(ActionType.API_CALL, _api_call(client, settings.api_base_url))
    registry.register_action(ActionType.SCRIPT, _script(settings.scripts_dir))
    registry.register_evaluator("compliance_script", _compliance_script(settings.scripts_dir))

    async def notification(parameters: dict[str, Any], context: dict[str, Any]) -> Any:
        return await registry.notify({"kind": "notification", **parameters})

    async def notify_action(parameters: dict[str, Any], context: dict[str, Any]) -> Any:
        return await registry.notify({"kind": "response_notification", "event": context, **parameters})

    async def escalate_action(parameters: dict[str, Any], context: dict[str, Any]) -> Any:
        return await registry.notify({"kind": "escalation", "event": context, **parameters})

    registry.register_action(ActionType.NOTIFICATION, notification)
    registry.register_action(ResponseActionType.NOTIFY, notify_action)
    registry.register_action(ResponseActionType.ESCALATE, escalate_action)

    if settings.notify_webhook_url:
        registry.set_notifier(_webhook_notifier(client, settings.notify_webhook_url))
        logger.info("Webhook notifier configured", url=settings.notify_webhook_url)

    return client
