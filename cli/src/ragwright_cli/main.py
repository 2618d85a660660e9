from __future__ import annotations

import asyncio
import json
from typing import Annotated, Any

import typer
from ragwright import Ragwright
from ragwright.features import FEATURE_NAMES, parse_bool
from ragwright.schemas.rag_chat import ChatMessage, ChatResponse
from ragwright.settings import resolve_openai_api_key

app = typer.Typer(add_completion=False, help="Ragwright CLI (SDK-powered).")


def _require_api_key(provided: str | None) -> str:
    resolved = resolve_openai_api_key(provided)
    if resolved:
        return resolved
    raise typer.BadParameter(
        "Missing OpenAI API key. Provide --openai-api-key or set OPENAI_API_KEY."
    )


def _print_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _parse_feature_flags(raw: list[str] | None) -> dict[str, bool]:
    overrides: dict[str, bool] = {}
    for item in raw or []:
        name, sep, value = item.partition("=")
        name = name.strip()
        if not sep or name not in FEATURE_NAMES:
            raise typer.BadParameter(
                f"Expected NAME=BOOL with NAME in {sorted(FEATURE_NAMES)}, got {item!r}",
                param_hint="--feature",
            )
        try:
            overrides[name] = parse_bool(value, name=name)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--feature") from exc
    return overrides


def _build_client(
    openai_api_key: str | None, openai_base_url: str | None, model: str | None
) -> Ragwright:
    key = _require_api_key(openai_api_key)
    return Ragwright(openai_api_key=key, openai_base_url=openai_base_url, model=model)


def _render_answer(response: ChatResponse) -> str:
    lines = [response.answer]
    if response.citations:
        lines.append("")
        lines.append("Sources:")
        for index, citation in enumerate(response.citations, start=1):
            label = citation.title or citation.url or citation.id
            lines.append(f"  [{index}] {label}")
    return "\n".join(lines)


OpenAIKeyOption = Annotated[
    str | None,
    typer.Option("--openai-api-key", envvar="OPENAI_API_KEY", help="OpenAI API key."),
]
OpenAIBaseUrlOption = Annotated[
    str | None,
    typer.Option(
        "--openai-base-url",
        envvar="OPENAI_BASE_URL",
        help="OpenAI-compatible base URL (e.g. an Azure OpenAI /openai/v1/ endpoint).",
    ),
]
ModelOption = Annotated[
    str | None,
    typer.Option("--model", help="Override RAGWRIGHT_CHAT_MODEL for this run."),
]
SessionIdOption = Annotated[
    str | None,
    typer.Option("--session-id", help="Conversation/session id (derived when omitted)."),
]
FeatureOption = Annotated[
    list[str] | None,
    typer.Option(
        "--feature",
        help="Per-request feature override as NAME=BOOL (repeatable).",
    ),
]


@app.command()
def ask(
    prompt: Annotated[str, typer.Argument(help="Question to answer.")],
    openai_api_key: OpenAIKeyOption = None,
    openai_base_url: OpenAIBaseUrlOption = None,
    model: ModelOption = None,
    session_id: SessionIdOption = None,
    features: FeatureOption = None,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
) -> None:
    """Answer one question with retrieval, synthesis and critique."""

    overrides = _parse_feature_flags(features)
    client = _build_client(openai_api_key, openai_base_url, model)
    response = client.chat(prompt, session_id=session_id, feature_overrides=overrides)

    if json_output:
        _print_json(response.model_dump(mode="json"))
        return

    typer.echo(_render_answer(response))


@app.command()
def stream(
    prompt: Annotated[str, typer.Argument(help="Question to answer.")],
    openai_api_key: OpenAIKeyOption = None,
    openai_base_url: OpenAIBaseUrlOption = None,
    model: ModelOption = None,
    session_id: SessionIdOption = None,
    features: FeatureOption = None,
    show_events: Annotated[
        bool,
        typer.Option("--events", help="Print every session event as NDJSON."),
    ] = False,
) -> None:
    """Stream an answer as it is generated."""

    overrides = _parse_feature_flags(features)
    client = _build_client(openai_api_key, openai_base_url, model)

    async def _consume() -> str | None:
        failure: str | None = None
        async for event, data in client.astream(
            prompt, session_id=session_id, feature_overrides=overrides
        ):
            if show_events:
                typer.echo(json.dumps({"event": event, "data": data}, default=str))
                continue
            if event == "token":
                typer.echo(data.get("delta", ""), nl=False)
            elif event == "draft" and data.get("attempt", 0) > 0:
                typer.echo("\n--- revised ---")
            elif event == "error":
                failure = str(data.get("message", "unknown error"))
        if not show_events:
            typer.echo("")
        return failure

    failure = asyncio.run(_consume())
    if failure is not None:
        typer.echo(f"Error: {failure}", err=True)
        raise typer.Exit(code=1)


@app.command()
def chat(
    openai_api_key: OpenAIKeyOption = None,
    openai_base_url: OpenAIBaseUrlOption = None,
    model: ModelOption = None,
    session_id: SessionIdOption = None,
    features: FeatureOption = None,
) -> None:
    """Interactive chat loop (keeps the conversation history between prompts)."""

    overrides = _parse_feature_flags(features)
    client = _build_client(openai_api_key, openai_base_url, model)
    history: list[ChatMessage] = []

    typer.echo("Enter prompts. Type 'exit' or 'quit' to leave.")

    while True:
        try:
            text = typer.prompt(">")
        except (EOFError, KeyboardInterrupt, typer.Abort):
            typer.echo("\nBye.")
            raise typer.Exit(code=0) from None

        if text.strip().lower() in {"exit", "quit"}:
            raise typer.Exit(code=0)

        history.append(ChatMessage(role="user", content=text))
        response = client.chat(history, session_id=session_id, feature_overrides=overrides)
        session_id = session_id or response.metadata.session_id
        history.append(ChatMessage(role="assistant", content=response.answer))
        typer.echo(_render_answer(response))
        typer.echo("")


@app.command("features")
def show_features(
    openai_api_key: OpenAIKeyOption = None,
    openai_base_url: OpenAIBaseUrlOption = None,
    session_id: SessionIdOption = None,
) -> None:
    """Print the resolved feature flags (and their sources) as JSON."""

    client = _build_client(openai_api_key, openai_base_url, None)
    resolution = client.features(session_id)
    payload: dict[str, Any] = resolution.as_payload()
    if session_id is not None:
        payload["session_id"] = session_id
    _print_json(payload)


if __name__ == "__main__":
    app()
