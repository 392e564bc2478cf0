from .utils import device_fingerprint, get_client_ip


class ClientContextMiddleware:
    """Attach the resolved client IP and device fingerprint to every request"""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.client_ip = get_client_ip(request)
        request.device_fingerprint = device_fingerprint(request.META, request.client_ip)
        return self.get_response(request)
