"""Redis-backed storage: queues, sorted sets, history counters and a raw key/value store."""