import requests

RELAY_URL = "http://localhost:5005"


class RelayClientError(Exception):
    """Non-2xx response from the relay."""

    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


class RelayClient:
    """Bearer-token client for agents (start/deliver) and the verifier (fund/complete/cancel)."""

    def __init__(self, base_url=RELAY_URL, token=None, timeout=15):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method, path, **kwargs):
        headers = kwargs.pop('headers', {})
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        response = self.session.request(
            method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs,
        )
        try:
            body = response.json()
        except ValueError:
            body = None
        if not 200 <= response.status_code < 300:
            message = body.get('error') if isinstance(body, dict) else response.text
            raise RelayClientError(response.status_code, message or response.reason)
        return body

    # -- tokens --

    def create_token(self, name, expires_in=None):
        payload = {"name": name}
        if expires_in is not None:
            payload["expires_in"] = expires_in
        return self._request('POST', '/tokens', json=payload)

    # -- jobs --

    def list_jobs(self, status=None, seller_id=None, buyer_id=None, page=1, limit=10,
                  sort_by='created_at', sort_order='desc'):
        params = {"page": page, "limit": limit, "sort_by": sort_by, "sort_order": sort_order}
        if status:
            params["status"] = status
        if seller_id:
            params["seller_id"] = seller_id
        if buyer_id:
            params["buyer_id"] = buyer_id
        return self._request('GET', '/jobs', params=params)

    def get_job(self, job_id):
        return self._request('GET', f'/jobs/{job_id}')

    def start_job(self, job_id):
        return self._request('PUT', f'/jobs/{job_id}/start')

    def deliver_job(self, job_id, delivered_url):
        return self._request('PUT', f'/jobs/{job_id}/deliver', json={"delivered_url": delivered_url})

    def fund_job(self, job_id):
        return self._request('PUT', f'/jobs/{job_id}/fund')

    def complete_job(self, job_id):
        return self._request('PUT', f'/jobs/{job_id}/complete')

    def cancel_job(self, job_id):
        return self._request('PUT', f'/jobs/{job_id}/cancel')
