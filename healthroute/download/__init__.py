"""
download — Model manifest, verified on-disk artifact store and the download manager.
"""
