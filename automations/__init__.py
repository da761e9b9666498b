"""
Automations — trigger → conditions → ordered actions.

- registry: save-time validation of automation definitions
- triggers: trigger type aliases and trigger config filters
- runner:   per-event evaluation and execution bookkeeping
- executor: idempotent, retrying action side effects
"""
