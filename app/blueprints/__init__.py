"""
Well-Architected Review Service
Blueprint registry.

    review_bp     — /api/v1/reviews    (session lifecycle, answers, report)
    questions_bp  — /api/v1/questions  (pillar and question catalog)
    health_bp     — /api/v1/health     (liveness and readiness checks)
"""
