from rest_framework.permissions import BasePermission


class PostOrAuthenticated(BasePermission):
    """Trackers may POST without credentials; reads need a logged-in user"""

    def has_permission(self, request, view):
        if request.method == 'POST':
            return True
        return bool(request.user and request.user.is_authenticated)
