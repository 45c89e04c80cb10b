from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from py_mini_racer import MiniRacer

from duck_bridge.errors import ChallengeFormatChangedError, UpstreamUnavailableError

logger = logging.getLogger("uvicorn.error")

CHALLENGE_HEADER = "x-vqd-hash-1"
CANONICAL_CLIENT_HASH = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)
CHALLENGE_GLOBALS: dict[str, Any] = {
    "__DDG_BE_VERSION__": 1,
    "__DDG_FE_CHAT_HASH__": 1,
}

_GLOBAL_NAME_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")

# Minimal browser surface the challenge program reads: the window aliases,
# a document holding the hidden "#jsa" iframe, navigator and location.
_BROWSER_SHIM = r"""
var window = globalThis;
window.self = window;
window.top = window;
window.parent = window;
window.frames = window;

function __makeElement(tagName) {
  var element = {
    tagName: String(tagName).toUpperCase(),
    nodeName: String(tagName).toUpperCase(),
    style: {},
    attributes: {},
    children: [],
    childNodes: [],
    textContent: "",
    innerHTML: "",
    setAttribute: function (name, value) { this.attributes[name] = String(value); if (name === "id") { this.id = String(value); } },
    getAttribute: function (name) { return Object.prototype.hasOwnProperty.call(this.attributes, name) ? this.attributes[name] : null; },
    hasAttribute: function (name) { return Object.prototype.hasOwnProperty.call(this.attributes, name); },
    removeAttribute: function (name) { delete this.attributes[name]; },
    appendChild: function (child) { this.children.push(child); this.childNodes.push(child); child.parentNode = this; return child; },
    removeChild: function (child) { this.children = this.children.filter(function (c) { return c !== child; }); this.childNodes = this.children.slice(); return child; },
    querySelector: function () { return null; },
    querySelectorAll: function () { return []; },
    getElementsByTagName: function () { return []; },
    addEventListener: function () {},
    removeEventListener: function () {},
    getBoundingClientRect: function () { return { x: 0, y: 0, top: 0, left: 0, right: 0, bottom: 0, width: 0, height: 0 }; }
  };
  return element;
}

function __makeDocument() {
  var doc = {
    readyState: "complete",
    cookie: "",
    referrer: "https://duckduckgo.com/",
    head: __makeElement("head"),
    body: __makeElement("body"),
    createElement: function (tagName) { return __makeElement(tagName); },
    createTextNode: function (text) { return { nodeName: "#text", textContent: String(text) }; },
    getElementById: function () { return null; },
    querySelector: function () { return null; },
    querySelectorAll: function () { return []; },
    getElementsByTagName: function (tagName) {
      var name = String(tagName).toLowerCase();
      if (name === "head") { return [this.head]; }
      if (name === "body") { return [this.body]; }
      return [];
    },
    addEventListener: function () {},
    removeEventListener: function () {}
  };
  doc.documentElement = __makeElement("html");
  doc.documentElement.appendChild(doc.head);
  doc.documentElement.appendChild(doc.body);
  return doc;
}

var document = __makeDocument();
var __jsa = __makeElement("iframe");
__jsa.setAttribute("id", "jsa");
__jsa.setAttribute("sandbox", "allow-scripts allow-same-origin");
__jsa.style.position = "absolute";
__jsa.style.left = "-9999px";
__jsa.style.top = "-9999px";
__jsa.contentDocument = __makeDocument();
__jsa.contentWindow = { document: __jsa.contentDocument, top: window, parent: window };
__jsa.contentWindow.self = __jsa.contentWindow;
__jsa.contentWindow.window = __jsa.contentWindow;
document.body.appendChild(__jsa);
document.getElementById = function (id) { return id === "jsa" ? __jsa : null; };
document.querySelector = function (selector) { return selector === "#jsa" ? __jsa : null; };
document.querySelectorAll = function (selector) { return selector === "#jsa" ? [__jsa] : []; };

var location = {
  href: "https://duckduckgo.com/",
  origin: "https://duckduckgo.com",
  protocol: "https:",
  host: "duckduckgo.com",
  hostname: "duckduckgo.com",
  pathname: "/",
  search: "",
  hash: ""
};
"""


class ChallengeExecutor(Protocol):
    async def execute(
        self,
        program: str,
        *,
        globals: Mapping[str, Any],
        user_agent: str,
    ) -> dict[str, Any]: ...


class MiniRacerChallengeExecutor:
    """Runs challenge programs in a fresh V8 isolate with no I/O bindings."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))

    async def execute(
        self,
        program: str,
        *,
        globals: Mapping[str, Any],
        user_agent: str,
    ) -> dict[str, Any]:
        return await asyncio.to_thread(self._execute_sync, program, globals, user_agent)

    def _execute_sync(
        self,
        program: str,
        globals: Mapping[str, Any],
        user_agent: str,
    ) -> dict[str, Any]:
        ctx = MiniRacer()
        try:
            return self._run(ctx, program, globals, user_agent)
        finally:
            ctx.close()

    def _run(
        self,
        ctx: MiniRacer,
        program: str,
        globals: Mapping[str, Any],
        user_agent: str,
    ) -> dict[str, Any]:
        timeout_ms = int(self.timeout_seconds * 1000)
        ctx.eval(_BROWSER_SHIM, timeout=timeout_ms)
        ctx.eval(_navigator_script(user_agent), timeout=timeout_ms)
        for name, value in globals.items():
            if not _GLOBAL_NAME_RE.match(name):
                msg = f"Invalid challenge global name: {name!r}"
                raise ValueError(msg)
            ctx.eval(f"window[{json.dumps(name)}] = {json.dumps(value)};", timeout=timeout_ms)

        # Indirect eval runs the program in global scope; the program may
        # evaluate to a plain object or to a promise of one.
        wrapped = (
            f"Promise.resolve((0, eval)({json.dumps(program)}))"
            ".then(function (result) { return JSON.stringify(result); })"
        )
        promise = ctx.eval(wrapped, timeout=timeout_ms)
        raw = promise.get(timeout=self.timeout_seconds)
        if not isinstance(raw, str):
            msg = "Challenge program did not produce a JSON-serializable result."
            raise ValueError(msg)
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            msg = "Challenge program result is not an object."
            raise ValueError(msg)
        return parsed


def _navigator_script(user_agent: str) -> str:
    navigator = {
        "userAgent": user_agent,
        "appVersion": user_agent.removeprefix("Mozilla/"),
        "language": "en-US",
        "languages": ["en-US", "en"],
        "platform": "Win32",
        "vendor": "Google Inc.",
        "webdriver": False,
        "cookieEnabled": True,
        "hardwareConcurrency": 8,
        "maxTouchPoints": 0,
    }
    return f"var navigator = {json.dumps(navigator)}; window.navigator = navigator;"


def derive_token(result: dict[str, Any]) -> str:
    """Turn the challenge program's result object into the request header value."""
    client_hashes = result.get("client_hashes")
    if not isinstance(client_hashes, list) or not client_hashes:
        raise ChallengeFormatChangedError("Challenge result is missing client_hashes.")
    if not all(isinstance(item, str) for item in client_hashes):
        raise ChallengeFormatChangedError("Challenge client_hashes must be strings.")

    fingerprints = list(client_hashes)
    fingerprints[0] = CANONICAL_CLIENT_HASH
    hashed = [
        base64.b64encode(hashlib.sha256(item.encode("utf-8")).digest()).decode("ascii")
        for item in fingerprints
    ]
    payload = {**result, "client_hashes": hashed}
    serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(serialized.encode("utf-8")).decode("ascii")


def decode_challenge_program(header_value: str) -> str:
    try:
        return base64.b64decode(header_value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise ChallengeFormatChangedError(
            f"Challenge header is not base64-encoded UTF-8: {exc}"
        ) from exc


class ChallengeSolver:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        status_url: str,
        executor: ChallengeExecutor | None = None,
    ) -> None:
        self._client = client
        self._status_url = status_url
        self._executor = executor or MiniRacerChallengeExecutor()

    async def solve(self, user_agent: str) -> str:
        header_value = await self._fetch_challenge(user_agent)
        program = decode_challenge_program(header_value)
        try:
            result = await self._executor.execute(
                program,
                globals=CHALLENGE_GLOBALS,
                user_agent=user_agent,
            )
        except ChallengeFormatChangedError:
            raise
        except Exception as exc:
            logger.warning(
                "challenge_execution_failed error_type=%s error=%s",
                exc.__class__.__name__,
                exc,
            )
            raise ChallengeFormatChangedError(
                f"Challenge program failed: {exc}"
            ) from exc
        return derive_token(result)

    async def _fetch_challenge(self, user_agent: str) -> str:
        try:
            response = await self._client.get(
                self._status_url,
                headers=_status_headers(user_agent),
            )
        except httpx.RequestError as exc:
            raise UpstreamUnavailableError(
                f"Failed to reach upstream status endpoint: {exc}"
            ) from exc

        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                f"Failed to get VQD: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )

        header_value = response.headers.get(CHALLENGE_HEADER)
        if not header_value:
            raise ChallengeFormatChangedError(
                f"Missing challenge header {CHALLENGE_HEADER} in status response."
            )
        return header_value


def _status_headers(user_agent: str) -> dict[str, str]:
    return {
        "accept": "*/*",
        "accept-language": "en-US,en;q=0.9",
        "cache-control": "no-store",
        "pragma": "no-cache",
        "priority": "u=1, i",
        "referer": "https://duckduckgo.com/",
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
        "x-vqd-accept": "1",
        "user-agent": user_agent,
    }
