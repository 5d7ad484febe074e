"""Reconciliation engine for desired-state documents.

Builds a dependency graph from a document, plans the operations that
converge actual state to it, and executes them through provider plugins
with state persisted between runs.
"""
