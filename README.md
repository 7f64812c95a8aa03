# workerkit

workerkit is a small framework for service applications. A service is built from modules, and each module registers handlers with one or more workers. An `App` starts every worker in its own thread, waits for SIGINT or SIGTERM, and then shuts the workers down in an orderly way.

## Installation

```
pip install workerkit
```

To run the test suite, install the `test` extra:

```
pip install "workerkit[test]"
```

The only required dependency is `pymongo`, used by the MongoDB job store. The Redis-backed parts (`RedisWorker`, `RedisQueue`) take a client object you create yourself; any client with the `redis` package's API works, and you install that package separately if you need it.

## Main parts

- `workerkit.core` holds the shared building blocks:
  - `WorkerType` (`SCHEDULER`, `REDIS_SUBSCRIBER`, `TASK_QUEUE`)
  - `WorkerHandler` and `WorkerHandlerGroup`; `WorkerHandlerGroup.add(pattern, *funcs)` registers handler functions
  - `EventContext`, which is what handler functions receive; `message()` returns the body as text
  - the `Locker` interface and `NoopLocker`
  - `WorkerModule` (a name plus a mount function per worker type) and `Service`
  - the `AppServer` interface (`serve`, `shutdown(timeout)`, `name`), and `App`, which runs the servers and shuts them down
- `workerkit.cron_schedule` handles cron intervals:
  - `parse_duration` reads duration strings such as `2s`, `300ms` or `1h30m`
  - `parse_at_time` reads start times such as `23:00@daily`, `08:30:00@weekly` or `23:00@10s` and returns the wait until the first run and the repeat interval
  - `create_cron_job_key` builds a job key and `parse_cron_job_key` reads it back
- `workerkit.cron_worker` provides `CronWorker` and `CronOptions`. The worker runs each scheduler job as it falls due, limits how many runs of one job may be in progress at once (`max_goroutines`), and can reschedule a job with `update_interval`.
- `workerkit.redis_message` and `workerkit.redis_worker` handle keys that carry a message:
  - `create_redis_pubsub_message` builds a key, `delete_redis_pubsub_message` builds a pattern matching such keys, and `parse_redis_pubsub_key_topic` reads a key back into a `RedisMessage`
  - `RedisWorker` subscribes to expired-key events and runs the handler named in each expired key
- `workerkit.graphql_ws` implements the server side of the `graphql-ws` subscription protocol over a websocket object you supply (with `read_json`, `write_json` and `close`). Its entry points are `Connection` and `connect`; `GraphQLService` is the interface your subscription backend implements. `select_subprotocol` and `cors_headers` help with the HTTP upgrade.
- The task queue is split across several modules:
  - `workerkit.task_models` holds the models (`Job`, `Filter`, `JobStatus`, `TaskOptions` and the dashboard views) and `new_job`
  - `workerkit.task_queue` holds the queue backends `InMemQueue` and `RedisQueue`
  - `workerkit.task_store` holds the `Persistent` interface and the `MongoPersistent` job store
  - `workerkit.task_subscribers` holds `SubscriberHub`, which keeps dashboard subscribers and pushes updated views onto their queues
  - `workerkit.task_worker` holds `TaskQueueWorker`, which runs queued jobs and retries a failed job after the `delay` its error carries
- `workerkit.http_error` provides `HTTPError` and `custom_http_error_handler(error, method, path)`, which maps an error to a `(status_code, message)` pair, with a "Resource ... not found" message for 404.

## Example

```python
from workerkit.cron_schedule import create_cron_job_key, parse_cron_job_key

key = create_cron_job_key("daily-report", "{}", "23:00@daily")
print(parse_cron_job_key(key))  # ('daily-report', '{}', '23:00@daily')
```

```python
from workerkit.redis_message import create_redis_pubsub_message, parse_redis_pubsub_key_topic

raw = create_redis_pubsub_message("scheduled-notif", {"test": "testing"})
msg = parse_redis_pubsub_key_topic(raw.encode())
assert msg.handler_name == "scheduled-notif"
assert msg.message == '{"test":"testing"}'
```

Build a `Service`, create the workers you need (`CronWorker`, `RedisWorker`, `TaskQueueWorker`), put them in `service.applications`, and call `App(service).run()`. The first signal starts a graceful shutdown; a second one during shutdown stops waiting for the workers.

## What it does not do

workerkit contains no HTTP, REST or GraphQL server of its own and no dashboard: the task queue's dashboard views and `SubscriberHub` queues are there for you to serve, and `graphql_ws` needs a websocket connection accepted by your own web server. It has no command-line program, and it does not create the Redis or MongoDB connections; you pass the clients in.