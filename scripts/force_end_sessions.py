#!/usr/bin/env python3
import argparse
import asyncio

from voicecoach.db import Database
from voicecoach.errors import CoachError
from voicecoach.summarizer import Summarizer


async def run(args: argparse.Namespace) -> int:
    db = Database()
    summarizer = Summarizer(db)

    rows = await db.fetch(
        """
        SELECT id, client_id
        FROM session
        WHERE ended IS NULL
          AND deleted = FALSE
          AND created < NOW() - make_interval(mins => $2)
        ORDER BY created ASC
        LIMIT $1
        """,
        args.limit,
        args.idle_minutes
    )

    ended = 0
    failed = 0
    for row in rows:
        if args.client_id and row["client_id"] != args.client_id:
            continue
        try:
            await summarizer.end_session(str(row["id"]))
            ended += 1
        except CoachError as e:
            failed += 1
            print(f"force_end: session={row['id']} error={e.code}")

    await db.close()
    print(f"force_end: found={len(rows)} ended={ended} failed={failed}")
    return 0 if failed == 0 else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="End and summarize sessions that were never ended.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--idle-minutes", type=int, default=120)
    parser.add_argument("--client-id")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
