"""Coordinators that share the current session.

- fetch: phase state machine, topic selection, cancellation
- playback: per-topic audio handoff, scrubbing, interruptions
- feedback: exactly-once per-topic feedback submission
- schedule: periodic scheduled-summary trigger
- client: wires the above around one session
"""
