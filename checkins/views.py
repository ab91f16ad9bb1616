import logging

from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import generics, permissions, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.views import APIView

from core.permissions import IsStaffOrReadOnly
from core.utils import filter_fingerprint
from .filters import CheckInOutRecordFilter
from .models import CheckInOutRecord, VisitSettings
from .serializers import (
    CheckInOutCreateSerializer,
    CheckInOutRecordSerializer,
    RecordReviewSerializer,
    VisitQuerySerializer,
    VisitSerializer,
    VisitSettingsSerializer,
)
from .services import delete_visit, find_visit, geofence_fields, get_visits
from .store import EventFilter, EventStore

logger = logging.getLogger(__name__)


def _display_name(user):
    return user.get_full_name() or user.get_username()


class CheckInOutRecordListCreateAPIView(generics.ListCreateAPIView):
    """Raw check-in/out records; POST records a manual check-in or check-out."""

    serializer_class = CheckInOutRecordSerializer
    filterset_class = CheckInOutRecordFilter
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = CheckInOutRecord.objects.all().order_by('-timestamp')
        # Staff see everyone, everybody else only their own records
        if not self.request.user.is_staff:
            qs = qs.filter(subject=self.request.user)
        return qs

    def create(self, request, *args, **kwargs):
        serializer = CheckInOutCreateSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning(
                "Check-in/out validation failed",
                extra={"errors": serializer.errors, "subject_id": str(request.user.pk)},
            )
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        location = {
            'latitude': data['latitude'],
            'longitude': data['longitude'],
            'accuracy': data.get('accuracy'),
            'address': data.get('address', ''),
        }
        record = EventStore().create_event(
            subject_id=request.user.pk,
            subject_name=_display_name(request.user),
            site_name=data['site_name'],
            kind=data['kind'],
            location=location,
            image=data.get('image'),
            remarks=data.get('remarks', ''),
            status='Pending',
            **geofence_fields(data['latitude'], data['longitude']),
        )
        logger.info(f"{record.kind} recorded for {record.subject_name} at {record.site_name} ({record.id})")
        response_data = CheckInOutRecordSerializer(record, context={'request': request}).data
        return Response(response_data, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([permissions.IsAdminUser])
def review_record(request, pk):
    """Approve or reject a check-in/out record"""
    record = get_object_or_404(CheckInOutRecord, pk=pk)
    serializer = RecordReviewSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    record.status = serializer.validated_data['status']
    record.reviewed_by = request.user
    record.reviewed_at = timezone.now()
    record.save(update_fields=['status', 'reviewed_by', 'reviewed_at', 'updated_at'])
    logger.info(f"Record {record.id} marked {record.status} by {request.user.pk}")
    return Response(CheckInOutRecordSerializer(record, context={'request': request}).data)


class VisitListAPIView(APIView):
    """
    Paginated visits. Running this also closes overdue visits with a
    synthetic check-out before the page is built.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        query = VisitQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)
        params = query.validated_data

        subject_id = params.get('subject_id')
        if not request.user.is_staff:
            subject_id = request.user.pk

        event_filter = EventFilter(
            subject_id=subject_id,
            site_name=params.get('site_name'),
            from_date=params.get('from_date'),
            to_date=params.get('to_date'),
        )
        filter_key = filter_fingerprint(event_filter.as_params())

        # A changed filter always starts again from the first page
        page = params.get('page')
        previous_key = params.get('filter_key')
        if previous_key and previous_key != filter_key:
            page = 1

        result = get_visits(event_filter, page=page, page_size=params.get('page_size'))
        return Response({
            'visits': VisitSerializer(result.visits, many=True, context={'request': request}).data,
            'page': result.page,
            'page_size': result.page_size,
            'total_pages': result.total_pages,
            'total': result.total,
            'filter_key': filter_key,
        })


class VisitDetailAPIView(APIView):
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, check_in_id):
        visit = find_visit(check_in_id)
        return Response(VisitSerializer(visit, context={'request': request}).data)

    def delete(self, request, check_in_id):
        """Delete the check-in, its matched check-out and any evidence photos."""
        visit = find_visit(check_in_id)
        delete_visit(visit)
        return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['GET', 'PUT', 'PATCH'])
@permission_classes([IsStaffOrReadOnly])
def visit_settings(request):
    """Read or update the visit duration budget and branch geofence"""
    instance = VisitSettings.load()
    if request.method == 'GET':
        return Response(VisitSettingsSerializer(instance).data)

    serializer = VisitSettingsSerializer(instance, data=request.data, partial=request.method == 'PATCH')
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    serializer.save()
    logger.info(f"Visit settings updated by {request.user.pk}: {serializer.data}")
    return Response(serializer.data)
