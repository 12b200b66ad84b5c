from dotenv import load_dotenv

from services.session_store import FileSessionStore
from utils.config import ActiveConfig
from utils.logger import logger
from workflows.invoice import build_engine


def main():
    load_dotenv()
    session_id = "cli-user1"  # Replace with auth in production
    store = FileSessionStore(ActiveConfig.SESSION_FILE)
    engine = build_engine()
    ctx = store.load(session_id)

    if ctx.current_step is None:
        result = engine.start_workflow(ctx, "invoice")
    else:
        last = next((m.content for m in reversed(ctx.conversation_history) if m.role == "assistant"), "")
        print(f"Agent: Picking up where we left off. {last}".strip())
        result = None
    if result is not None:
        print(f"Agent: {result.user_message}")
        store.save(ctx)

    while True:
        try:
            user_input = input("You: ").strip()
            if not user_input:
                print("Agent: Give me something to work with. What's your answer?")
                continue
            if user_input.lower() in ("new", "restart"):
                result = engine.start_workflow(ctx, "invoice", user_input)
            elif ctx.current_step is None:
                print("Agent: That invoice is done. Type 'new' to start another one.")
                continue
            else:
                result = engine.process_message(ctx, user_input)

            print(f"Agent: {result.user_message}")
            store.save(ctx)
        except (KeyboardInterrupt, EOFError):
            print("\nAgent: Goodbye!")
            break
        except Exception as e:
            logger.error(f"Turn failed: {e}")
            print("Agent: Oops, something went wrong. Let's try again.")


if __name__ == "__main__":
    main()
