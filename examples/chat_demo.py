"""Minimal terminal chat against a running Agent API.

Usage:
    python examples/chat_demo.py                      # 交互式聊天
    python examples/chat_demo.py --base-url URL       # 写入 .env 后再启动
"""

import sys

from agent_chat import create_chat_service
from agent_chat.config.env_utils import update_env_values
from agent_chat.domain.exceptions import BusinessError


def print_turn(agent_id, turn):
    if not turn.is_from_user:
        print(f"\r[{agent_id}] {turn.text}", end="", flush=True)


if __name__ == "__main__":
    if len(sys.argv) == 3 and sys.argv[1] == "--base-url":
        update_env_values({"agent_api_base_url": sys.argv[2]})
        print("Saved AGENT_API_BASE_URL to .env, restart to apply")
        sys.exit(0)

    service = create_chat_service(on_turn_updated=print_turn)
    try:
        conversation = service.start()
        if conversation is None:
            if not service.agent_ids:
                print("No agents available")
                sys.exit(1)
            conversation = service.select_agent(service.agent_ids[0])
        print(f"Chatting with {conversation.agent_display_name} ({len(conversation.turns)} earlier messages)")
        while True:
            try:
                text = input("\nYou: ")
            except EOFError:
                break
            if text.strip() in {"/quit", "/exit"}:
                break
            if text.strip() == "/new":
                service.clear_conversation()
                print("Started a new conversation")
                continue
            try:
                outcome = service.send(text)
            except BusinessError as e:
                print(e.message)
                continue
            print()
            if not outcome.committed:
                print(f"(not saved: {outcome.store_error})")
    except BusinessError as e:
        print(f"Error [{e.code}]: {e.message}")
    finally:
        service.close()
