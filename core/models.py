# core/models.py
from django.conf import settings
from django.db import models


class SystemSetting(models.Model):
    """Simplified system settings - just key-value pairs"""
    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'System Setting'
        verbose_name_plural = 'System Settings'
        ordering = ['key']

    def __str__(self):
        return f"{self.key}: {self.value}"

    @classmethod
    def get_setting(cls, key, default=None):
        """Get a setting value by key"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return setting.value
        except cls.DoesNotExist:
            return default

    @classmethod
    def get_int_setting(cls, key, default=0):
        """Get an integer setting value"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return int(setting.value)
        except (cls.DoesNotExist, ValueError):
            return default

    @classmethod
    def set_setting(cls, key, value, description=''):
        """Set or update a setting"""
        setting, created = cls.objects.get_or_create(
            key=key,
            defaults={
                'value': str(value),
                'description': description,
                'is_active': True
            }
        )
        if not created:
            setting.value = str(value)
            setting.description = description
            setting.is_active = True
            setting.save()
        return setting


class AuditLog(models.Model):
    """Audit trail for billing changes that must stay traceable"""
    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('price_lock', 'Price Lock'),
        ('installment_add', 'Installment Added'),
        ('installment_remove', 'Installment Removed'),
        ('catalog_load', 'Catalog Load'),
    ]

    # User and action info
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    actor = models.CharField(max_length=150, blank=True, help_text="Identity string of whoever acted")
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)

    # Model info
    model_name = models.CharField(max_length=50)
    object_id = models.PositiveIntegerField(null=True, blank=True)
    object_repr = models.CharField(max_length=200, blank=True)

    # Change details
    changes = models.JSONField(default=dict, blank=True)
    description = models.TextField(blank=True, help_text="Human-readable description of the change")

    # Request info
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)

    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['model_name', 'timestamp'], name='audit_model_ts_idx'),
            models.Index(fields=['action', 'timestamp'], name='audit_action_ts_idx'),
            models.Index(fields=['timestamp'], name='audit_ts_idx'),
        ]
        verbose_name = 'Audit Log'
        verbose_name_plural = 'Audit Logs'

    def __str__(self):
        return f"{self.actor or 'Anonymous'} {self.action} {self.model_name} at {self.timestamp}"

    @property
    def changed_fields(self):
        """Get list of changed field names"""
        if not self.changes:
            return []
        return list(self.changes.keys())

    @classmethod
    def log_action(cls, actor, action, model_instance=None, changes=None, request=None, description='', user=None,
                   model_name=''):
        """
        Log an action with optional change details

        Args:
            actor: Identity string of whoever performed the action
            action: Action type (price_lock, installment_add, ...)
            model_instance: The model instance that was changed (None for bulk actions)
            changes: Dict of field changes {field_name: {'old': ..., 'new': ...}}
            request: HttpRequest object for IP/user agent
            description: Human-readable description
            user: Optional user instance behind the identity
            model_name: Used when there is no single instance
        """
        log_entry = cls(
            user=user if getattr(user, 'pk', None) else None,
            actor=(actor or '')[:150],
            action=action,
            model_name=model_instance._meta.model_name if model_instance is not None else model_name,
            object_id=model_instance.pk if model_instance is not None else None,
            object_repr=str(model_instance)[:200] if model_instance is not None else '',
            changes=changes or {},
            description=description
        )

        if request:
            log_entry.ip_address = cls.get_client_ip(request)
            log_entry.user_agent = request.META.get('HTTP_USER_AGENT', '')[:255]

        log_entry.save()
        return log_entry

    @staticmethod
    def get_client_ip(request):
        """Get client IP address from request"""
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            ip = x_forwarded_for.split(',')[0]
        else:
            ip = request.META.get('REMOTE_ADDR')
        return ip
