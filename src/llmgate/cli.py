import argparse
import asyncio
import logging
import sys

from llmgate._logging import get_logger

logger = get_logger("LlmGate.CLI")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="llmgate: tier-aware LLM gateway")
    parser.add_argument(
        "--config",
        help="Path to llmgate.yaml. Falls back to LLMGATE_CONFIG env var, "
        "then ~/.llmgate/llmgate.yaml. Built-in defaults apply if none is found.",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Quota database path (default: quota.db_path from config, "
        "then ~/.llmgate/quota.db)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    subparsers = parser.add_subparsers(dest="command")

    # --- chat subcommand ---
    chat = subparsers.add_parser("chat", help="Send one prompt and stream the reply.")
    chat.add_argument("prompt", help="User message")
    chat.add_argument("--model", default="auto", help="Model id or 'auto' (default)")
    chat.add_argument("--system", default=None, help="Optional system prompt")
    chat.add_argument("--user", default="local", help="Quota user id (default: local)")
    chat.add_argument("--org", default="", help="Billing org id (default: the user id)")
    chat.add_argument(
        "--no-overage",
        action="store_true",
        help="Deny over-cap requests instead of admitting them as overage.",
    )

    # --- select subcommand ---
    sel = subparsers.add_parser("select", help="Show which model 'auto' would pick.")
    sel.add_argument("prompt", help="User message")
    sel.add_argument(
        "--tier",
        default="free",
        help="Subscription tier: free, pro, business, enterprise (default: free)",
    )
    sel.add_argument("--tools", action="store_true", help="Request uses tools.")
    sel.add_argument("--code", action="store_true", help="Force the code-task hint.")
    sel.add_argument("--reasoning", action="store_true", help="Force the reasoning hint.")
    sel.add_argument(
        "--budget",
        type=float,
        default=None,
        help="Max blended price in cents per million tokens.",
    )

    # --- quota subcommand ---
    quota = subparsers.add_parser("quota", help="Show (or set) a user's quota.")
    quota.add_argument("--user", default="local", help="Quota user id (default: local)")
    quota.add_argument("--org", default="", help="Billing org id")
    quota.add_argument("--set-tier", default=None, help="Assign a tier before showing.")

    # --- cost subcommand ---
    cost = subparsers.add_parser("cost", help="Price a request.")
    cost.add_argument("model", help="Model id")
    cost.add_argument("input_tokens", type=int)
    cost.add_argument("output_tokens", type=int)

    # --- config subcommand ---
    subparsers.add_parser("config", help="Print the effective configuration.")

    return parser


def _cmd_select(args) -> int:
    from llmgate.fallback import get_fallback_chain
    from llmgate.messages import ChatMessage, ModelSelectionContext
    from llmgate.selector import select_best_model

    context = ModelSelectionContext(
        has_tools=args.tools,
        is_code_task=args.code,
        requires_reasoning=args.reasoning,
        max_budget_cents_per_mtok=args.budget,
    )
    model = select_best_model([ChatMessage("user", args.prompt)], args.tier, context)
    chain = get_fallback_chain(model)
    print(f"Model:    {model}")
    print(f"Fallback: {' -> '.join(str(m) for m in chain)}")
    return 0


def _cmd_cost(args) -> int:
    from llmgate.catalog import calculate_cost, parse_model

    try:
        model = parse_model(args.model)
    except ValueError as exc:
        print(exc)
        return 1
    print(f"${calculate_cost(model, args.input_tokens, args.output_tokens):.6f}")
    return 0


def _cmd_quota(args, config) -> int:
    from llmgate.quota import QuotaManager

    manager = QuotaManager.from_config(config, db_path=args.db)
    if args.set_tier:
        manager.store.set_tier(args.user, args.set_tier, org_id=args.org)
    snap = manager.store.get_or_create_quota(args.user, args.org)
    print(f"User:    {snap.user_id}  (org: {snap.org_id})")
    print(f"Tier:    {snap.tier}")
    print(f"Today:   {snap.tokens_used_today:,} / {snap.max_tokens_per_day:,} tokens")
    print(f"Month:   {snap.tokens_used_this_month:,} / {snap.max_tokens_per_month:,} tokens")
    print(f"Spend:   ${snap.cost_spent_this_month:.4f}")
    print(f"Models:  {', '.join(snap.allowed_models)}")
    return 0


async def _run_chat(args, config) -> int:
    from llmgate.gateway import ChatGateway
    from llmgate.messages import ChatMessage
    from llmgate.providers import build_registry
    from llmgate.quota import QuotaManager, QuotaUser
    from llmgate.router import ChatRouter

    messages = []
    if args.system:
        messages.append(ChatMessage("system", args.system))
    messages.append(ChatMessage("user", args.prompt))
    user = QuotaUser(args.user, args.org)

    registry = build_registry(config)
    quota = QuotaManager.from_config(config, db_path=args.db)
    router = ChatRouter(registry, tier_limits=quota.store.tier_limits)
    gateway = ChatGateway(router, quota)
    try:
        admission = await gateway.admit(
            user, args.model, messages, allow_overage=not args.no_overage
        )
        if not admission.allowed:
            print(f"Request denied: {admission.check.reason}")
            return 1
        if admission.check.is_overage:
            print(
                f"[overage] estimated ${admission.check.estimated_cost_usd or 0:.4f}",
                file=sys.stderr,
            )

        usage = None
        async for chunk in gateway.stream(admission, user, messages):
            if chunk.content:
                print(chunk.content, end="", flush=True)
            for call in chunk.tool_calls or []:
                print(f"\n[tool call] {call.name}({call.arguments_json})")
            if chunk.done:
                usage = chunk.usage
        print()
        if usage is not None:
            print(
                f"[{admission.model}] {usage.input_tokens} in / {usage.output_tokens} out",
                file=sys.stderr,
            )
        return 0
    finally:
        await registry.aclose()


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # ---- Subcommands that need no config ----
    if args.command == "select":
        sys.exit(_cmd_select(args))
    if args.command == "cost":
        sys.exit(_cmd_cost(args))

    from llmgate.config import ConfigLoader
    from llmgate.errors import LlmGateError

    config = ConfigLoader(config_path=args.config, allow_missing=True)

    if args.command == "config":
        print(config.to_yaml())
        return

    try:
        if args.command == "quota":
            sys.exit(_cmd_quota(args, config))
        if args.command == "chat":
            sys.exit(asyncio.run(_run_chat(args, config)))
    except (LlmGateError, ValueError) as exc:
        logger.error(str(exc))
        print(f"Error: {exc}")
        sys.exit(1)
