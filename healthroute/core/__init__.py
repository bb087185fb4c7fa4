"""
core — Constants, configuration, errors, events, logging and the model-state machine.
"""
