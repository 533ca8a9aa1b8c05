#!/usr/bin/env python3

from __future__ import annotations

import argparse
import sys

import httpx


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Interactive WhatsApp-style chat with LeadFlow via /simulate")
    parser.add_argument("--base-url", default="http://localhost:8000", help="API base URL (default: http://localhost:8000)")
    parser.add_argument("--phone", default="5511999999999", help="Customer phone number (default: 5511999999999)")
    parser.add_argument("--force", action="store_true", help="Bypass the business-hours check")
    parser.add_argument("--timeout", type=float, default=45.0, help="HTTP timeout seconds (default: 45)")
    parser.add_argument("--api-key", default="", help="X-API-Key for the conversation endpoint")
    args = parser.parse_args(argv)

    base_url = args.base_url.rstrip("/")
    headers = {"X-API-Key": args.api_key} if args.api_key else {}

    print(f"Chat started as {args.phone}. Type /exit to quit, /history to show the stored conversation.")
    print("Note: messages sent less than 2 seconds apart are dropped by the server.")

    with httpx.Client(timeout=args.timeout, headers=headers) as client:
        while True:
            try:
                user_text = input("cliente> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                break

            if not user_text:
                continue
            if user_text.lower() in {"/exit", "/quit", "exit", "quit"}:
                break

            if user_text == "/history":
                try:
                    resp = client.get(f"{base_url}/conversations/{args.phone}")
                    resp.raise_for_status()
                except httpx.HTTPError as e:
                    print(f"error> {e}")
                    continue
                data = resp.json()
                print(f"(mode={data['mode']} status={data['status']} temperature={data['lead_temperature']})")
                for message in data.get("messages", []):
                    print(f"  [{message['sender']}] {message['content']}")
                continue

            req = {"phone": args.phone, "message": user_text, "force": args.force}
            try:
                resp = client.post(f"{base_url}/simulate", json=req)
                resp.raise_for_status()
                data = resp.json()
            except httpx.HTTPStatusError as e:
                print(f"error> HTTP {e.response.status_code}: {e.response.text}")
                continue
            except Exception as e:
                print(f"error> {e}")
                continue

            reply = (data.get("bot_response") or "").strip()
            if not reply:
                print("bot> (no reply: rate limited or conversation is with a human)")
            else:
                print(f"bot> {reply}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
