from functools import wraps

from django.http import JsonResponse


def staff_required(view):
    """JSON-flavoured ``staff_member_required`` for the admin API."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        user = request.user
        if not user.is_authenticated:
            return JsonResponse({"success": False, "message": "Authentication required"}, status=401)
        if not user.is_staff:
            return JsonResponse({"success": False, "message": "Admin access required"}, status=403)
        return view(request, *args, **kwargs)

    return wrapper
