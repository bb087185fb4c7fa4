"""
llm — Prompt construction, the on-device inference backend and its lifecycle.
"""
