"""Fakes shared by the test modules"""

_NO_JSON = object()


class FakeResponse:
    """Just enough of requests.Response for the gateway and the panel client"""

    def __init__(self, json_data=_NO_JSON, status_code=200, text=None, reason='OK'):
        self._json = json_data
        self.status_code = status_code
        self.reason = reason
        self.text = text if text is not None else ('' if json_data is _NO_JSON else str(json_data))

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._json is _NO_JSON:
            raise ValueError('No JSON object could be decoded')
        return self._json


def text_response(text, status_code=200):
    return FakeResponse(text=text, status_code=status_code)


class ScriptStub:
    """
    Stands in for requests.request inside gateway.
    Records every call; `handler(call)` returns a FakeResponse or an exception to raise.
    """

    def __init__(self):
        self.calls = []
        self.handler = lambda call: FakeResponse({'ok': True})

    def __call__(self, method, url, **kwargs):
        call = {
            'method': method,
            'url': url,
            'json': kwargs.get('json'),
            'params': kwargs.get('params'),
            'timeout': kwargs.get('timeout'),
        }
        self.calls.append(call)
        result = self.handler(call)
        if isinstance(result, BaseException):
            raise result
        return result

    def actions(self):
        return [(c['method'], (c['json'] or c['params'] or {}).get('action')) for c in self.calls]


def action_of(call):
    return (call['json'] or call['params'] or {}).get('action')
