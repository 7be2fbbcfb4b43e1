"""
ASR Bench Lab Analysis Package.

Pure statistics over benchmark run logs: the numeric and text kernel,
aggregation into stage summaries, repeatability, per-sample and
per-configuration breakdowns, duration buckets, scaling fits and
bottleneck attribution, plus a plain-text report of a batch export.
"""
