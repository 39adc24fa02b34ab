"""SQLite-backed work queue for evaluation jobs.

Work items carry only ``{"jobId": ...}``; all business state lives in the job
store, so a lost queue can be rebuilt from jobs that never completed. Claims
are compare-and-set updates, which lets several worker slots (threads or
processes) pull from the same table without handing one item to two slots.
"""
