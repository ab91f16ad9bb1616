from django.urls import path
from . import views

urlpatterns = [
    path('records/', views.CheckInOutRecordListCreateAPIView.as_view(), name='checkin-record-list-create'),
    path('records/<uuid:pk>/review/', views.review_record, name='checkin-record-review'),
    path('visits/', views.VisitListAPIView.as_view(), name='visit-list'),
    path('visits/<uuid:check_in_id>/', views.VisitDetailAPIView.as_view(), name='visit-detail'),
    path('settings/', views.visit_settings, name='visit-settings'),
]
