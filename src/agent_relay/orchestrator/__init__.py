"""Turn orchestration between a chat front-end and a local agent engine CLI.

One turn is one engine subprocess. The orchestrator resolves how the turn
attaches to earlier conversation history, streams the engine's events to
the front-end in order, and parks the turn whenever a human has to decide
something: a tool approval, a plan review, a retry after a capacity limit.
Those decisions arrive later and from elsewhere (a button, a terminal
prompt), so they are correlated through opaque tokens in
``agent_relay.interactions`` rather than through call stacks.

Everything runs on one asyncio loop. Scopes are independent; within a scope
turns are strictly sequential and a new turn cancels the previous one.
"""
