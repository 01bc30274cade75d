import json

from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from vkubelet.api.pods import handle_running_pods
from vkubelet.errdefs import NotFoundError


def make_request():
    return Request(EnvironBuilder(path="/pods").get_environ())


def test_lists_pods():
    pods = [
        {"metadata": {"name": "web", "namespace": "default"}},
        {"metadata": {"name": "db", "namespace": "default"}},
    ]
    response = handle_running_pods(lambda: pods)(make_request())
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/json"
    document = json.loads(response.get_data(as_text=True))
    assert document["kind"] == "PodList"
    assert document["apiVersion"] == "v1"
    assert document["items"] == pods


def test_empty_list_has_null_items():
    response = handle_running_pods(lambda: [])(make_request())
    assert json.loads(response.get_data(as_text=True))["items"] is None


def test_none_is_not_implemented():
    assert handle_running_pods(None)(make_request()).status_code == 501


def test_errors_are_reported():
    def failing():
        raise NotFoundError("no pods here")

    response = handle_running_pods(failing)(make_request())
    assert response.status_code == 404
    assert response.get_data(as_text=True) == "no pods here"