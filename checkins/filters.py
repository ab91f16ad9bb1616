import django_filters

from .models import CheckInOutRecord


class CheckInOutRecordFilter(django_filters.FilterSet):
    subject_id = django_filters.CharFilter(field_name='subject_id')
    kind = django_filters.ChoiceFilter(choices=CheckInOutRecord.KIND_CHOICES)
    site_name = django_filters.CharFilter(field_name='site_name', lookup_expr='iexact')
    from_date = django_filters.DateFilter(field_name='timestamp', lookup_expr='date__gte')
    to_date = django_filters.DateFilter(field_name='timestamp', lookup_expr='date__lte')
    status = django_filters.ChoiceFilter(choices=CheckInOutRecord.STATUS_CHOICES)
    auto_generated = django_filters.BooleanFilter()

    class Meta:
        model = CheckInOutRecord
        fields = ['subject_id', 'kind', 'site_name', 'from_date', 'to_date', 'status', 'auto_generated']
