import pytest
import requests
from unittest.mock import MagicMock, patch

from expansion.errors import RoutingUnavailable
from providers.routing import MAX_TABLE_SIZE, OSRMClient


@pytest.fixture
def client():
    with patch('requests.Session') as mock_session:
        client = OSRMClient("http://osrm.test/")
        client.session = mock_session.return_value
        yield client


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


def test_format_coordinates():
    """OSRM wants lng,lat."""
    assert OSRMClient.format_coordinates([(51.5, -0.12), (50.0, 10.0)]) == \
        "-0.120000,51.500000;10.000000,50.000000"


def test_table_request(client):
    client.session.get.return_value = _response({"code": "Ok", "distances": [[1200.0, None]]})

    matrix = client.table([(50.0, 10.0)], [(50.01, 10.0), (50.02, 10.0)])

    assert matrix == [[1200.0, None]]
    url = client.session.get.call_args[0][0]
    params = client.session.get.call_args[1]["params"]
    assert url == ("http://osrm.test/table/v1/driving/"
                   "10.000000,50.000000;10.000000,50.010000;10.000000,50.020000")
    assert params == {"sources": "0", "destinations": "1;2", "annotations": "distance"}


def test_error_code_raises(client):
    client.session.get.return_value = _response({"code": "InvalidQuery", "message": "bad coords"})
    with pytest.raises(RoutingUnavailable, match="bad coords"):
        client.table([(50.0, 10.0)], [(50.01, 10.0)])


def test_missing_matrix_raises(client):
    client.session.get.return_value = _response({"code": "Ok"})
    with pytest.raises(RoutingUnavailable):
        client.table([(50.0, 10.0)], [(50.01, 10.0)])


def test_transport_failure_retried_then_raises(client):
    client.session.get.side_effect = requests.ConnectionError("refused")
    with patch("time.sleep"):
        with pytest.raises(RoutingUnavailable):
            client.table([(50.0, 10.0)], [(50.01, 10.0)])
    assert client.session.get.call_count == 3


def test_large_tables_are_chunked(client):
    def answer(url, params, timeout):
        n = len(params["destinations"].split(";"))
        return _response({"code": "Ok", "distances": [[float(i) for i in range(n)]]})

    client.session.get.side_effect = answer
    destinations = [(50.0 + i * 0.001, 10.0) for i in range(150)]

    matrix = client.table([(50.0, 10.0)], destinations)

    assert client.session.get.call_count == 2
    assert len(matrix[0]) == 150
    assert matrix[0][MAX_TABLE_SIZE - 1] == 0.0


def test_empty_input(client):
    assert client.table([(50.0, 10.0)], []) == [[]]
    client.session.get.assert_not_called()


def test_base_url_required():
    with pytest.raises(ValueError):
        OSRMClient("")
