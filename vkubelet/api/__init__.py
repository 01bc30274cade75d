"""Request handlers for the endpoints a kubelet serves: pod lists, logs, stats and metrics."""