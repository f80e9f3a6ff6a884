"""FileKeeper lifecycle core.

The FileRecord aggregate and its state machine, the reconciler that checks
uploaded objects against their records, and the clamd scan client.  Nothing
in this package talks to a concrete database, storage backend or broker;
collaborators are the abstract classes in :mod:`filekeeper.core.interfaces`.
"""
