"""Helpers for running a node: request auth, TLS contexts and pod filters."""