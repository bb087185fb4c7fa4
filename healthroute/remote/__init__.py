"""
remote — Remote language-model service used when the local model cannot answer.
"""
