"""In-process durable step substrate (memoized steps, events, waits)."""
