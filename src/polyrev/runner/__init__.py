"""Job runner: chunk planning, retry, execution and orchestration.

A job holds one concurrency permit for its whole lifetime and runs its chunks
strictly in sequence through a provider client. Chunk order matters because
the provider session token and the "findings only on the final chunk"
convention both depend on it. Jobs are independent of each other: one job's
failure never cancels siblings.
"""
