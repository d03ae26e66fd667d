"""Persistence replicas for the project collection.

Two downstream copies are written by the sync engine:

    LocalCache     one JSON snapshot per owner, rewritten on every change
    RemoteStore    per-owner document collection keyed by project id
                   (MemoryRemoteStore in-process, HttpRemoteStore over REST)

Neither is read back into memory except during the engine's initial load.
"""
