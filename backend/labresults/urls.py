from django.urls import path

from .views import (
    AssignMappingView,
    AttachReportView,
    IdentifierCorrectionView,
    IngestView,
    RawMessageDetailView,
    RemediationQueueView,
    ResultDownloadView,
    RetractResultView,
    SupersedeResultView,
)

urlpatterns = [
    path('ingest/', IngestView.as_view(), name='ingest'),
    path('raw-messages/<uuid:raw_id>/', RawMessageDetailView.as_view(), name='raw-message-detail'),
    path('results/<uuid:result_id>/download', ResultDownloadView.as_view(), name='result-download'),
    path('admin/queue/', RemediationQueueView.as_view(), name='admin-queue'),
    path('admin/raw-messages/<uuid:raw_id>/corrections/', IdentifierCorrectionView.as_view(),
         name='admin-raw-corrections'),
    path('admin/results/<uuid:result_id>/assign/', AssignMappingView.as_view(), name='admin-result-assign'),
    path('admin/results/<uuid:result_id>/retract/', RetractResultView.as_view(), name='admin-result-retract'),
    path('admin/results/<uuid:result_id>/supersede/', SupersedeResultView.as_view(), name='admin-result-supersede'),
    path('admin/results/<uuid:result_id>/report/', AttachReportView.as_view(), name='admin-result-report'),
]
