"""
ASR Bench Lab Harness Package.

Drives benchmark batches against an ASR backend: dataset sampling and
metadata caching, audio acquisition, the model session lifecycle
(load, verify, release), the trial executor, exports, snapshots and
the ``asr-bench`` command line.
"""
