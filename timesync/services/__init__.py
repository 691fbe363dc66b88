# Services package init
"""
TimeSync Backend — Services Layer
===================================

What:  The sync core, sitting between routes (HTTP) and database (persistence).

Service Inventory:
    - RecordStore: keyed record storage with compare-and-set writes and tombstones
    - ChangeJournal: append-only, gapless change log; the only source of deltas
    - ConflictResolver (abstract): pluggable conflict policy
      (LastWriterWinsResolver, ServerWinsResolver)
    - MergeEngine: applies, rejects or resolves each client change
    - SyncCoordinator: runs a whole sync exchange with retries and atomic commit
"""
