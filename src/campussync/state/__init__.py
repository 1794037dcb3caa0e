"""State layer.

This package owns how change notifications and optimistic patches are
merged into ordered in-memory collections.  Only
:class:`~campussync.state.collection.OrderedCollection` re-establishes the
ordering invariant; everything else hands it patches.
"""
