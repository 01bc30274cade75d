# vkubelet

Building blocks for making something that is not a kubelet look like a node
to a Kubernetes cluster. The package keeps a node registered and healthy in the
API server, and it provides request handlers for the HTTP endpoints that the
API server calls on a kubelet.

Nodes, leases and pods are plain JSON-shaped dicts (`metadata`, `spec`,
`status`). You bring your own API client; the controllers only call the few
async methods listed below.

## Node lifecycle

- `vkubelet.node.NodeController(provider, node, nodes, ...)` does three things:
  - It registers the node if the API server reports it as not found.
  - It keeps the node's status current with a three-way strategic merge patch.
    Conditions and annotations that other agents set on the node are left alone.
  - It writes the status on a timer and whenever the provider reports a change.

  `nodes` must offer awaitable `get(name)`, `create(node)` and
  `patch_status(name, patch)`. If you pass `lease_client`, the controller also
  keeps a node lease renewed, and the full status is pushed only every
  `status_interval` (default 60 s). Without a lease client, the status itself
  is the heartbeat and is pushed every `ping_interval` (default 10 s).

  Use it like this:
  - Start it with `await controller.run()`.
  - `wait_ready()` returns once the control loop has started, and raises if
    the controller exits before that.
  - `wait_done()` returns the error that stopped the controller, if any.
  - An optional `status_update_error_handler` is awaited with a failed update's
    error, after which the update is tried once more.
- `vkubelet.node.update_node_status(nodes, node)` patches a node's status
  once, retrying on `ConflictError`.
- `vkubelet.ping.NodePingController` awaits the provider's `ping()` on a
  steady interval, with an optional timeout. There is never more than one ping
  in flight. `get_result()` waits for the first ping, then returns the latest
  `PingResult` (start time and error).
- `vkubelet.lease.LeaseController` creates the node lease in namespace
  `kube-node-lease` and renews it. The lease client must offer awaitable
  `get(name)`, `create(lease)` and `update(lease)`. The controller retries
  updates up to five times and re-reads the lease on a conflict. While the
  lease cannot be ensured, it backs off, doubling the wait up to seven seconds.
- `vkubelet.providers` defines the `NodeProvider` interface, an async `ping()`
  and `notify_node_status(callback)`, and two ready-made providers:
  - `NaiveNodeProvider` only answers pings.
  - `NaiveNodeProviderV2` also forwards node updates through
    `await update_status(node)`.
- `vkubelet.patch` holds the merge logic on its own: `three_way_merge_patch`,
  `apply_strategic_merge_patch`, `prepare_three_way_patch` and
  `simplest_object_metadata`.

Your API client signals errors by raising `vkubelet.errdefs.NotFoundError` or
`ConflictError`, or by raising an error whose `__cause__` chain contains one.
The `is_not_found` and `is_conflict` helpers look along that chain.

## Kubelet HTTP handlers

Every handler here is a callable that takes a `werkzeug.wrappers.Request` and
returns a `Response`. To serve one as a WSGI application, wrap it with
werkzeug's `Request.application`.

`vkubelet.api.server.pod_handler(config, debug)` builds a router from a
`PodHandlerConfig`, whose fields are plain (non-async) callbacks:

| Path | Callback | Answer |
| --- | --- | --- |
| `/pods` | `get_pods_from_kubernetes()` | JSON `PodList` |
| `/runningpods/` (only when `debug` is true) | `get_pods()` | JSON `PodList` |
| `/containerLogs/<namespace>/<pod>/<container>` | `get_container_logs(namespace, pod, container, opts)` | streamed log body |
| `/stats/summary` (only when set) | `get_stats_summary()` | JSON |
| `/metrics/resource` (only when set) | `get_metrics_resource()` | Prometheus text |
| `/exec/...`, `/attach/...`, `/portForward/...` | `run_in_container`, `attach_to_container`, `port_forward` | see below |

The handlers answer errors like this:
- An endpoint whose callback is missing answers `501 not implemented`.
- An unknown path answers `404 request not found`.
- A path with a missing trailing slash is redirected.
- Errors raised by callbacks become status codes through `vkubelet.errdefs.handle_error`:
  - `NotFoundError` gives 404.
  - `InvalidInputError` gives 400.
  - Anything else gives 500.

```python
from werkzeug.test import Client
from werkzeug.wrappers import Request

from vkubelet.api.server import PodHandlerConfig, pod_handler

config = PodHandlerConfig(get_pods_from_kubernetes=lambda: [{"metadata": {"name": "web"}}])
app = Request.application(pod_handler(config))
print(Client(app).get("/pods").get_data(as_text=True))
```

Other pieces:
- `attach_pod_routes(config, mux, debug)` and `attach_pod_metrics_routes(config, mux)`
  mount the handlers on any object with a `handle(path, handler)` method.
- `pod_stats_summary_handler` and `pod_metrics_resource_handler` build
  stand-alone routers.
- `instrument_handler` adds debug logging of each request.

The request parsers can be used on their own:

```python
from vkubelet.api.logs import parse_log_options
from vkubelet.errdefs import InvalidInputError

opts = parse_log_options({"tailLines": "99", "follow": "true"})
assert opts.tail == 99 and opts.follow

try:
    parse_log_options({"limitBytes": "0"})
except InvalidInputError as exc:
    print(exc)
```

`vkubelet.api.execopts.get_exec_options` reads the `tty`, `input`, `output`
and `error` flags of an exec or attach request. `vkubelet.api.metrics.encode_text`
renders `MetricFamily` objects in the Prometheus text exposition format.

## Node utilities

- `vkubelet.nodeutil.auth` guards the HTTP handlers.
  - `no_auth()` lets anonymous users do anything.
  - `with_auth(auth, handler)` answers 401 when authentication fails or is
    refused, 500 when the authorizer raises, and 403 unless the decision is
    `Decision.ALLOW`.
  - `NodeRequestAttr` describes each request as an access to the named node.
    It maps the HTTP method to a verb and the path to a subresource (`stats`,
    `metrics`, `log` or `proxy`).
- `vkubelet.nodeutil.tls.tls_context(*options)` builds a server `ssl.SSLContext`.
  It requires TLS 1.2 or later, uses the ciphers from `default_server_ciphers()`
  and asks for optional client certificates. It accepts these options:
  - `with_ca_cert(pem)`
  - `with_ca_from_path(path)`, which makes client certificates required
  - `with_key_pair_from_path(cert, key)`
- `vkubelet.nodeutil.filter` provides pod filters:

```python
from vkubelet.nodeutil.filter import filter_pods_for_node_name, pod_filters

mine = pod_filters(
    filter_pods_for_node_name("vk-0"),
    filter_pods_for_node_name("vk-1"),
)
assert mine({"spec": {"nodeName": "vk-1"}})
```

## What the package does not do

- It has no command and does not start an HTTP server. You mount the handlers
  in a server of your own.
- It contains no Kubernetes API client. You supply objects with the async
  methods described above.
- It does not run pods. There is no pod controller, and nothing that calls a
  provider to create or delete pods.
- Exec, attach and port forwarding are not streamed. Those routes check the
  request, answering 400 for bad options or a missing upgrade. Any upgrade
  request gets 500, because no stream protocol is supported.
- There is no webhook authentication or authorization against the API server.
  Only `no_auth()` and auth functions you write yourself are available.

## Testing

The tests use pytest and pytest-asyncio, both listed in the `test` extra:

```
pip install -e .[test]
pytest
```