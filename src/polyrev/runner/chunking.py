"""Split a job's file list into ordered chunks and wrap chunk prompts."""

from __future__ import annotations

import math
from collections.abc import Sequence

from polyrev.errors import ChunkPlanningError
from polyrev.runner.models import Chunk


def plan_chunks(job_id: str, files: Sequence[str], max_files: int) -> list[Chunk]:
    """Partition ``files`` into ``max(1, ceil(n / max_files))`` chunks.

    Original file order is preserved; chunk boundaries depend only on it.
    """

    if max_files < 1:
        raise ChunkPlanningError(f"Job {job_id}: max_files must be >= 1, got {max_files}.")
    seen: set[str] = set()
    duplicates: set[str] = set()
    for path in files:
        if path in seen:
            duplicates.add(path)
        seen.add(path)
    if duplicates:
        raise ChunkPlanningError(
            f"Job {job_id}: file set contains duplicates: {', '.join(sorted(duplicates))}",
        )

    total = max(1, math.ceil(len(files) / max_files))
    return [
        Chunk(
            job_id=job_id,
            sequence=sequence,
            total=total,
            files=tuple(files[sequence * max_files : (sequence + 1) * max_files]),
        )
        for sequence in range(total)
    ]


def build_chunk_prompt(base_prompt: str, chunk: Chunk) -> str:
    """Wrap the reviewer prompt with accumulate/final instructions for multi-chunk jobs."""

    if chunk.total == 1:
        return base_prompt

    file_list = "\n".join(f"- {path}" for path in chunk.files)
    if chunk.is_final:
        return (
            f"{base_prompt}\n\n---\n\n"
            f"**[CHUNKED REVIEW: {chunk.label} - FINAL CHUNK]**\n\n"
            f"You have now received ALL files across {chunk.total} chunks. "
            "Analyze ALL files from ALL chunks together and output your findings as JSON.\n\n"
            f"Files in this final chunk:\n{file_list}"
        )
    return (
        f"{base_prompt}\n\n---\n\n"
        f"**[CHUNKED REVIEW: {chunk.label} - ACCUMULATING]**\n\n"
        f"This review is split into {chunk.total} chunks. Read and index these files. "
        "Do NOT output findings yet - wait for the final chunk.\n\n"
        f"Reply ONLY with: `Chunk {chunk.label} received. {len(chunk.files)} files indexed.`\n\n"
        f"Files in this chunk:\n{file_list}"
    )
