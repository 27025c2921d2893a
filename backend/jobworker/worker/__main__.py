from jobworker.worker.worker_main import run

run()
