"""
Planning pipeline for huddle.

Spoken meeting audio -> transcript -> structured planning actions -> graph.
Transcription and interpretation are model calls; everything after them is
deterministic and replayable from the persisted chunk and its actions.

Guarantees:
- clips shorter than the minimum duration are skipped without any model call
- chunks sharing a conversation run the whole pipeline in submission order
- a chunk's actions are applied all-or-nothing
- every fatal failure carries the stage it happened in
"""
