"""RQ worker process entrypoint for retention sweeps.

``python worker.py --once`` runs a single sweep in-process and exits.
"""

import sys

from rq import Worker

from services.cleanup import run_cleanup_sweep_job
from services.cleanup_queue import CLEANUP_QUEUE_NAME, get_redis_connection


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)
    if "--once" in args:
        result = run_cleanup_sweep_job()
        files = result["files"]
        print(
            f"🧹 Cleanup sweep: scanned={files['scanned']} deleted={files['deleted']} "
            f"errors={len(files['errors'])} expired_requests={result['expired_requests']}"
        )
        return

    redis_conn = get_redis_connection()
    worker = Worker([CLEANUP_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
