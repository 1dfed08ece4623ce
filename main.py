"""Timeline Chat - grounded answers over timeline summaries

Simple CLI for asking a question against a timeline folder.
"""

import argparse
import asyncio
import sys

from timeline_chat.api.deps import build_orchestrator, get_settings_store, resolve_folder
from timeline_chat.llm_errors import ProviderError, StoreError, to_api_error
from timeline_chat.models.schemas import ChatRequest


def _citation_label(citation) -> str:
    label = f"({citation.kind}) {citation.title}"
    if citation.date_iso:
        label += f" [{citation.date_iso}]"
    if citation.kind == "original" and citation.source_id:
        label += f" <{citation.source}:{citation.source_id}>"
    return label


async def run_chat(args: argparse.Namespace) -> int:
    """Run one chat request and print the reply."""
    folder = resolve_folder(args.folder)
    request = ChatRequest(
        message=args.message,
        allow_originals=args.allow_originals,
        advisor_mode=args.advisor,
        synthesis_mode=args.synthesis,
    )
    print(f"Question: {request.message or '(recent activity)'}")
    print(f"Folder: {folder}")
    print("-" * 50)

    try:
        chat_settings = await get_settings_store().read(folder)
        result = await build_orchestrator(folder).chat(
            request,
            chat_settings,
            folder=folder,
            is_admin=args.admin,
        )
    except ProviderError as exc:
        api_error = to_api_error(exc, is_admin=args.admin)
        print(f"\n[!] Error ({api_error.code}): {api_error.message}")
        return 1
    except StoreError as exc:
        print(f"\n[!] Storage error during {exc.operation}: {exc}")
        return 1

    print(result.reply)

    if result.citations:
        print(f"\n[*] Citations ({len(result.citations)}):")
        for i, citation in enumerate(result.citations, 1):
            print(f"  {i}. {_citation_label(citation)}")

    if result.suggested_actions:
        print("\n[+] Suggested next steps:")
        for action in result.suggested_actions:
            print(f"  - {action}")

    print(f"\nProvider: {result.provider}/{result.model}  Request: {result.request_id}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Timeline Chat")
    parser.add_argument("--message", "-m", default="", help="Question to ask (blank for recent activity)")
    parser.add_argument("--folder", "-f", help="Timeline folder (default: from config)")
    parser.add_argument("--allow-originals", action="store_true", help="Allow opening original documents")
    parser.add_argument("--advisor", action="store_true", help="Advisor-style structured reply")
    parser.add_argument("--synthesis", action="store_true", help="Synthesize a timeline across sources")
    parser.add_argument("--admin", action="store_true", help="Surface provider configuration errors")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_chat(args)))


if __name__ == "__main__":
    main()
