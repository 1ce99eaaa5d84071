"""
Services Layer

Match engine business logic that:
- Accepts domain inputs (match/dispute IDs, user IDs, sessions)
- Returns domain outputs (models, dataclasses, dicts)
- Raises arena.errors.MatchEngineError subclasses for rule violations
- Does NOT depend on HTTP request/response objects
"""
