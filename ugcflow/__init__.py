"""UGC ad generation workers."""
