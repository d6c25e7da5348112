#!/usr/bin/python3
import sys


def main(query_id: int = 1, parameters: dict | None = None) -> int:
    """Execute a saved query and print how many rows came back.

    Kept as a tiny example entrypoint so other scripts (and tests) can reuse it
    without triggering network calls at import time.
    """

    # Easiest to import redash.py if it is in the same directory as this script.
    # Reads REDASH_URL / REDASH_API_KEY from the environment or a .env file.
    import redash

    try:
        client = redash.RedashClient(redash.RedashConfig.from_env())
    except ValueError as e:
        sys.stderr.write(f"{e}\n")
        return 2

    try:
        result = client.execute_saved_query(query_id, parameters=parameters or {})
    except redash.RedashError as e:
        sys.stderr.write(f"query {query_id} failed: {e}\n")
        return 1

    print(f"query {query_id}: {len(result.rows)} rows, columns={result.column_names}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(int(sys.argv[1]) if len(sys.argv) > 1 else 1))
