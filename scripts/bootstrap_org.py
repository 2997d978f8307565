"""
Creates (or refreshes) an organization and its owner membership.
Safe to run repeatedly; existing fields are merged, not replaced.

Usage:
    python scripts/bootstrap_org.py --org-id acme --owner-uid u1 \
        --owner-email owner@acme.jp --owner-name "Owner" [--org-name Acme] [--seat-limit 10]
"""
import argparse
import sys

from knowledgechat.config import DB_PATH, DEFAULT_SEAT_LIMIT, console
from knowledgechat.document_store import DocumentDatabase
from knowledgechat.errors import KnowledgeChatError
from knowledgechat.organization import bootstrap_organization


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Bootstrap an organization and its owner.")
    parser.add_argument("--org-id", required=True)
    parser.add_argument("--owner-uid", required=True)
    parser.add_argument("--owner-email", required=True)
    parser.add_argument("--owner-name", required=True)
    parser.add_argument("--org-name", default=None)
    parser.add_argument("--seat-limit", type=int, default=DEFAULT_SEAT_LIMIT)
    parser.add_argument("--db-path", default=str(DB_PATH))
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    db = DocumentDatabase(args.db_path)
    try:
        bootstrap_organization(
            db,
            org_id=args.org_id,
            owner_uid=args.owner_uid,
            owner_email=args.owner_email,
            owner_name=args.owner_name,
            org_name=args.org_name,
            seat_limit=args.seat_limit,
        )
    except KnowledgeChatError as exc:
        console.print(f"[bold red]{exc.message}[/bold red]")
        return 1
    finally:
        db.close()
    console.print("[green]Bootstrap completed.[/green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
