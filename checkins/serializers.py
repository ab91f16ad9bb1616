from django.conf import settings
from rest_framework import serializers

from .models import CheckInOutRecord, VisitSettings


class CheckInOutRecordSerializer(serializers.ModelSerializer):
    location = serializers.SerializerMethodField()

    class Meta:
        model = CheckInOutRecord
        fields = [
            'id',
            'subject',
            'subject_name',
            'site_name',
            'kind',
            'timestamp',
            'location',
            'image',
            'remarks',
            'auto_generated',
            'distance_from_branch',
            'is_inside_geofence',
            'status',
            'reviewed_by',
            'reviewed_at',
            'created_at',
        ]

    def get_location(self, obj):
        return obj.location._asdict()


class CheckInOutCreateSerializer(serializers.Serializer):
    site_name = serializers.CharField(max_length=255)
    kind = serializers.ChoiceField(choices=CheckInOutRecord.KIND_CHOICES)
    latitude = serializers.FloatField(required=True, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=True, min_value=-180, max_value=180)
    accuracy = serializers.FloatField(required=False, allow_null=True)  # GPS accuracy in meters
    address = serializers.CharField(required=False, allow_blank=True, default='')
    remarks = serializers.CharField(required=False, allow_blank=True, default='')
    image = serializers.ImageField(required=False, allow_null=True)

    def validate_site_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Site name is required')
        return value

    def validate(self, attrs):
        # Check GPS accuracy (optional but recommended)
        accuracy = attrs.get('accuracy')
        if accuracy and accuracy > 50:  # If accuracy worse than 50 meters
            raise serializers.ValidationError('GPS signal too weak. Please move to a better location.')
        return attrs


class RecordReviewSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=['Approved', 'Rejected'])


class VisitSerializer(serializers.Serializer):
    """Read-only view of a ``checkins.visits.Visit``."""

    subject_id = serializers.CharField(read_only=True)
    subject_name = serializers.CharField(read_only=True)
    site_name = serializers.CharField(read_only=True)
    check_in = CheckInOutRecordSerializer(read_only=True)
    check_out = CheckInOutRecordSerializer(read_only=True, allow_null=True)
    duration_seconds = serializers.SerializerMethodField()
    duration_hours = serializers.SerializerMethodField()
    exceeds_budget = serializers.BooleanField(read_only=True)
    is_open = serializers.BooleanField(read_only=True)
    auto_closed = serializers.BooleanField(read_only=True)

    def get_duration_seconds(self, obj):
        return int(obj.duration.total_seconds())

    def get_duration_hours(self, obj):
        return round(obj.duration.total_seconds() / 3600, 2)


class VisitQuerySerializer(serializers.Serializer):
    subject_id = serializers.IntegerField(required=False, min_value=1)
    site_name = serializers.CharField(required=False)
    from_date = serializers.DateField(required=False)
    to_date = serializers.DateField(required=False)
    page = serializers.CharField(required=False, default='1')
    page_size = serializers.IntegerField(
        required=False,
        min_value=1,
        max_value=settings.VISITS_MAX_PAGE_SIZE,
    )
    filter_key = serializers.CharField(required=False)

    def validate(self, attrs):
        from_date = attrs.get('from_date')
        to_date = attrs.get('to_date')
        if from_date and to_date and from_date > to_date:
            raise serializers.ValidationError('from_date must be on or before to_date')
        return attrs


class VisitSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = VisitSettings
        fields = [
            'max_visit_duration_hours',
            'branch_latitude',
            'branch_longitude',
            'geofence_radius_meters',
            'updated_at',
        ]
        read_only_fields = ['updated_at']

    def validate(self, attrs):
        lat = attrs.get('branch_latitude', getattr(self.instance, 'branch_latitude', None))
        lng = attrs.get('branch_longitude', getattr(self.instance, 'branch_longitude', None))
        if (lat is None) != (lng is None):
            raise serializers.ValidationError('Branch latitude and longitude must be set together')
        return attrs
