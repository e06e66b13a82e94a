"""quorum: sampled LLM runs, leased queues, ensemble reduction and pipelines."""

__version__ = "0.3.0"
