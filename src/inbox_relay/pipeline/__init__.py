"""File pipeline: claim -> invoke (with retries) -> route.

Every arriving file is driven through four stage directories by a
``PipelineOrchestrator``. The only cross-task coordination is the
exclusive claim on the Processing directory, so concurrent workers,
and a restarted instance, agree purely through the filesystem.
"""
