"""Batch orchestration: persistent queue, submission, routing and downloads.

Three independently paced processes (submission, passively observed status
events and downloads) are reconciled through one SQLite store. Every status
transition is re-derived from persisted attempts, so duplicate or late events
are harmless and an interrupted run resumes from the store alone.
"""
