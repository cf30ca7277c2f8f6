"""Utilities shared by the tag graph CLI and engine.

KPI logging and plotting live here; neither depends on the graph internals.
"""
