"""
Conversation sessions — the sales state machine, its durable phase timers,
and the flow that ties customer messages and deadlines together.
"""
