"""Fetchers that gather repository data for the association engine.

These modules talk to GitHub (or stand in for it in tests) and hand
back tags, events, comments and commits in the shape the engine
consumes.
"""
