"""Job handlers executed by :mod:`docflow.worker.main`, one per queue."""
