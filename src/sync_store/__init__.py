"""Runtime plumbing for snapshot sync: progress delivery and metrics."""
