# faktory

This is the core of a background job server that keeps its data in Redis.
Jobs are JSON documents. Queues are Redis lists. Jobs that are scheduled,
retrying or dead wait in Redis sorted sets, ordered by the time they fall due.

## Modules

### `faktory.util`

- Timestamps: `nows`, `thens` and `parse_time`.
- Job ids: `random_jid`, which gives 16 URL-safe characters.
- Other helpers: `random_int63`, `json_unmarshal`, `retryable`,
  `file_exists`, `darwin`, `memory_usage_mb`, `backtrace` and
  `dump_process_trace`.
- `faktory2_preview`, which reads the `FAKTORY2_PREVIEW` environment variable.

### `faktory.logger`

A levelled logger that writes to standard output. It colours its output when
standard output is a terminal.

- Warnings and errors are always written.
- `init_logger("info")` turns on info messages.
- `init_logger("debug")` turns on both info and debug messages.

### `faktory.storage.store`

`RedisStore` works on one Redis database. It offers:

- named queues, through `get_queue`, `existing_queue` and `each_queue`, which
  yields the queues in name order;
- `paused_queues`;
- the `retries`, `scheduled`, `working` and `dead` sorted sets, as attributes;
- `enqueue_all` and `enqueue_from`, which move jobs from a sorted set onto
  their queues;
- counters of processed and failed jobs through `success` and `failure`, read
  back with `total_processed`, `total_failures` and `history(days)`;
  `history` returns `(day, processed, failures)` tuples with today first, for
  at most 180 days;
- `raw()`, a key/value scratch pad (`RedisKV`);
- `stats`, `flush` and `close`.

It also has three functions for the Redis server itself:

- `boot_redis(path, sock)` starts a private `redis-server` that keeps its data
  in `path` and listens on the Unix socket `sock`. It returns a function that
  stops the server.
- `open_redis(sock, pool_size)` connects to a server that `boot_redis`
  started.
- `stop_redis(sock)` terminates that server.

### `faktory.storage.queue`

`RedisQueue` is a FIFO list with these methods: `push`, `add`, `pop`, `bpop`
(waits up to two seconds), `page`, `each`, `delete`, `size`, `pause`,
`resume`, `is_paused`, `clear` and `close`.

### `faktory.storage.sorted`

`RedisSorted` holds its entries (`SetEntry`) keyed by `"timestamp|jid"`. Its
methods are:

- `add`, `add_element`;
- `get`, `page`, `each`, and `find` for glob-pattern scans;
- `remove`, `remove_element`, `remove_entry`;
- `remove_before`, which pulls out the jobs that are due;
- `move_to`, which moves an entry into another set.

`decompose` and `score_for` convert keys and timestamps to scores.

### `faktory.storage.raw`

`RedisKV` stores byte values under string keys. Storing `None` raises
`NilValueError`.

### `faktory.server.connection`

`Connection` writes replies in the RESP wire format with `ok`, `number`,
`result` and `error`. A `KnownError` is sent with its own error code; any
other exception is sent after an `ERR` prefix.

### `faktory.server.workers`

- `ClientData` describes a worker process. Its `WorkerState` only moves
  forward: running, then quiet, then terminate.
- `Workers` is the heartbeat registry, with `setup_heartbeat`, `heartbeat`,
  `remove_connection` and `reap_heartbeats`.
- `client_data_from_hello` parses a HELLO payload.

### `faktory.server.config`

`ServerOptions` holds the server's settings and looks up values in the
global configuration by subsystem and key, through `config` and `string`.

### `faktory.server.mutate`

Bulk operations on the `retries`, `scheduled` and `dead` sets:
`mutate_clear`, `mutate_kill`, `mutate_discard` and `mutate_requeue`.

- A `JobFilter` selects jobs by jid, glob pattern or job type.
- `mutate(store, cmd)` runs a `MUTATE {json}` command line.

### `faktory.server.tasks`

`TaskRunner` runs each registered task on a background thread whenever the
Unix second is a multiple of that task's period. It comes with these tasks:

- `Scanner`, which calls a task function you supply on a sorted set;
- `ReservationReaper`, which calls `reap_expired_jobs` and `working_count` on
  a manager object you supply;
- `BeatReaper`, which drops workers that have not sent a heartbeat for a
  minute.

`Subsystem` is an abstract base for pluggable parts of a server.

## Example

```python
from faktory.storage.store import boot_redis, open_redis

stop = boot_redis("/tmp/faktory-data", "/tmp/faktory-data/redis.sock")
store = open_redis("/tmp/faktory-data/redis.sock", 10)

queue = store.get_queue("default")
queue.push(b'{"jid":"abc","jobtype":"Thing","args":[1],"queue":"default"}')
print(queue.size())   # 1
print(queue.pop())    # the payload back

store.success()
print(store.total_processed())

store.close()
stop()
```

`boot_redis` can only start the server if `redis-server` is on the `PATH`.

## What the package does not do

The package has the building blocks of a job server, but not the server
itself.

- There is no network listener and no command dispatcher. Nothing accepts
  client connections or handles HELLO, PUSH, FETCH, ACK, FAIL or BEAT.
- There is no job manager that reserves, acknowledges, fails or retries jobs.
- There is no web interface and no command-line program.

`ReservationReaper` and `Scanner` only call the manager object or the task
functions that you give them.

## Tests

```
pip install -e .[test]
pytest
```