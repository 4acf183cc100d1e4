# core/middleware.py
"""
Middleware to track the current user for billing audit trails
This allows the payment ledger to stamp who triggered a price lock
without every caller threading the request through
"""

import threading

# Thread-local storage for the current user
_thread_locals = threading.local()


def get_current_user():
    """Get the current user from thread-local storage"""
    return getattr(_thread_locals, 'user', None)


def set_current_user(user):
    """Set the current user in thread-local storage"""
    _thread_locals.user = user


def get_current_identity(default='system'):
    """Identity string of the current user, or `default` outside a request"""
    user = get_current_user()
    if user is None:
        return default
    return user.get_username() or default


class AuditMiddleware:
    """
    Middleware to track the current user for audit logging
    Stores user in thread-local storage so the ledger can access it
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        if user and user.is_authenticated:
            set_current_user(user)
        else:
            set_current_user(None)

        try:
            response = self.get_response(request)
        finally:
            # Clean up after request
            set_current_user(None)

        return response
