# tools.py
# Built-in capabilities: argument schemas plus handlers.
# The loop never calls these functions directly; it dispatches through
# the registry, which validates arguments first.
#
# Handlers raise on failure. The loop turns the exception into an error
# result the model can read and recover from.

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from tool_runtime.capabilities import Capability

SUMMARY_LIMIT = 4000
HTTP_TIMEOUT = 10.0


# ---------------------------------------------------------------------------
# Argument schemas
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EchoArgs(_Args):
    message: str


class SearchArgs(_Args):
    query: str = Field(..., min_length=1)
    max_results: int = Field(default=4, ge=1, le=10)


class SummarizeArgs(_Args):
    text: str


class FileWriteArgs(_Args):
    path: str = Field(..., min_length=1, description="Path relative to the workspace.")
    content: str


class HttpPostArgs(_Args):
    url: str = Field(..., pattern=r"^https?://")
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _tool_echo(args: dict) -> str:
    return args["message"]


def _tool_search(args: dict) -> str:
    from ddgs import DDGS

    query = args["query"].strip()
    if not query:
        raise ValueError("no query provided")

    # Coerce the generator to a list to ensure actual execution
    results = list(DDGS().text(query, max_results=args.get("max_results", 4)))
    if not results:
        return "No results found."

    lines = []
    for r in results:
        source = r.get("href", "") or "unknown"
        lines.append(f"[{source}]: {r.get('title', 'No Title')} — {r.get('body', '')}")
    return "\n".join(lines)


def _tool_summarize(args: dict) -> str:
    text = args["text"].strip()
    if not text:
        raise ValueError("no text provided")
    return text[:SUMMARY_LIMIT]


def _make_file_write(workspace: Path):
    root = Path(workspace).resolve()

    def _tool_file_write(args: dict) -> str:
        target = (root / args["path"]).resolve()
        if not target.is_relative_to(root):
            raise PermissionError(f"path '{args['path']}' escapes the workspace")
        target.parent.mkdir(parents=True, exist_ok=True)
        content = args["content"]
        target.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} bytes to {target.relative_to(root)}."

    return _tool_file_write


def _tool_http_post(args: dict) -> str:
    import httpx

    url = args["url"]
    # httpx.TimeoutException propagates as a capability failure, not a run abort.
    response = httpx.post(url, json=args.get("payload", {}), timeout=HTTP_TIMEOUT)
    return f"POST {url} → {response.status_code} ({len(response.content)} bytes)"


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


def builtin_capabilities(workspace: str | Path = "./workspace") -> list[Capability]:
    """The stock tool set. file_write is confined to `workspace`."""
    return [
        Capability(
            name="echo",
            description="Repeat a message back verbatim.",
            argument_schema=EchoArgs,
            handler=_tool_echo,
        ),
        Capability(
            name="web_search",
            description="Search the public web. Returns titles and excerpts attributed to their URLs.",
            argument_schema=SearchArgs,
            handler=_tool_search,
        ),
        Capability(
            name="summarize",
            description=f"Trim a long text to at most {SUMMARY_LIMIT} characters.",
            argument_schema=SummarizeArgs,
            handler=_tool_summarize,
        ),
        Capability(
            name="file_write",
            description="Write text to a file inside the agent workspace.",
            argument_schema=FileWriteArgs,
            handler=_make_file_write(Path(workspace)),
        ),
        Capability(
            name="http_post",
            description="POST a JSON payload to an http(s) URL.",
            argument_schema=HttpPostArgs,
            handler=_tool_http_post,
        ),
    ]
