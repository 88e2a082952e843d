"""Entry point for `python -m sentinel_research`.

Delegates to `python -m sentinel_research.pipeline`, which runs the full pipeline.
"""
import runpy
runpy.run_module("sentinel_research.pipeline", run_name="__main__", alter_sys=True)
