"""
memory — Device memory snapshots, pressure classification and load budgeting.
"""
