from django.contrib import admin
from .models import Donation, DonationEvent, Notification, Profile

@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ("quantity", "food_type", "status", "donor", "shelter", "volunteer", "created_at")
    list_filter = ("status", "food_type")
    list_select_related = ("donor", "shelter", "volunteer")
    search_fields = ("donor_name", "donor__name", "pickup_location")
    date_hierarchy = "created_at"
    ordering = ("-created_at",)
    # transitions only go through the coordinator
    readonly_fields = ("donor", "status", "shelter", "volunteer", "version", "created_at", "accepted_at", "completed_at")

    def has_add_permission(self, request):
        return False

@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ("name", "role", "email", "phone", "created_at")
    list_filter = ("role",)
    search_fields = ("name", "email")
    ordering = ("name",)

    def get_readonly_fields(self, request, obj=None):
        return ("role",) if obj else ()

@admin.register(DonationEvent)
class DonationEventAdmin(admin.ModelAdmin):
    list_display = ("id", "donation", "kind", "prior_status", "version", "created_at")
    list_filter = ("kind",)
    ordering = ("-id",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("title", "recipient", "kind", "read", "created_at")
    list_filter = ("kind", "read")
    list_select_related = ("recipient",)
    ordering = ("-created_at",)
