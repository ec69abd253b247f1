from datetime import datetime, timedelta

from flask import request, jsonify
from sqlalchemy import or_, func

from models import db, FarmingTip, YouthTraining, SecurityReport
from helpers import get_json_body

TIP_LIMIT = 20
COURSE_LIMIT = 20
REPORT_LIMIT = 20


def contains_filter(rows, attr, value):
    """Keeps rows whose JSON list column holds value."""
    return [r for r in rows if value in (getattr(r, attr) or [])]


def register_content_routes(app):

    # ============ Farming Tip Routes ============

    @app.route('/api/farming-tips', methods=['GET'])
    def get_farming_tips():
        try:
            query = FarmingTip.query.filter_by(is_active=True)
            if request.args.get('category'):
                query = query.filter(FarmingTip.category == request.args['category'])
            if request.args.get('difficulty'):
                query = query.filter(FarmingTip.difficulty == request.args['difficulty'])
            if request.args.get('featured') == 'true':
                query = query.filter(FarmingTip.is_featured.is_(True))

            tips = query.order_by(FarmingTip.is_featured.desc(), FarmingTip.created_at.desc()).all()
            if request.args.get('targetCrops'):
                tips = contains_filter(tips, 'target_crops', request.args['targetCrops'])
            if request.args.get('season'):
                tips = contains_filter(tips, 'season', request.args['season'])

            return jsonify([t.to_dict() for t in tips[:TIP_LIMIT]]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/farming-tips/featured', methods=['GET'])
    def get_featured_tips():
        tips = FarmingTip.query.filter_by(is_active=True, is_featured=True) \
            .order_by(FarmingTip.created_at.desc()).limit(5).all()
        return jsonify([t.to_dict() for t in tips]), 200

    @app.route('/api/farming-tips/weekly', methods=['GET'])
    def get_weekly_tips():
        tips = FarmingTip.query.filter(
            FarmingTip.is_active.is_(True),
            FarmingTip.created_at >= datetime.utcnow() - timedelta(days=7)
        ).order_by(FarmingTip.created_at.desc()).limit(10).all()
        return jsonify([t.to_dict() for t in tips]), 200

    @app.route('/api/farming-tips/search', methods=['GET'])
    def search_tips():
        q = request.args.get('q')
        if not q:
            return jsonify({'message': 'Search query is required'}), 400

        lang = request.args.get('lang', 'english')
        title_col = FarmingTip.title_yoruba if lang == 'yoruba' else FarmingTip.title_english
        content_col = FarmingTip.content_yoruba if lang == 'yoruba' else FarmingTip.content_english
        pattern = f"%{q}%"

        tips = FarmingTip.query.filter(
            FarmingTip.is_active.is_(True),
            or_(
                title_col.ilike(pattern),
                content_col.ilike(pattern),
                func.lower(db.cast(FarmingTip.tags, db.String)).like(pattern.lower())
            )
        ).order_by(FarmingTip.views.desc(), FarmingTip.likes.desc()).limit(15).all()
        return jsonify([t.to_dict() for t in tips]), 200

    @app.route('/api/farming-tips/categories/stats', methods=['GET'])
    def get_tip_category_stats():
        rows = db.session.query(
            FarmingTip.category,
            func.count(FarmingTip.id),
            func.sum(FarmingTip.views),
            func.sum(FarmingTip.likes),
            func.avg(FarmingTip.effectiveness_rating)
        ).filter(FarmingTip.is_active.is_(True)) \
            .group_by(FarmingTip.category) \
            .order_by(func.count(FarmingTip.id).desc()).all()

        return jsonify([{
            '_id': category,
            'count': count,
            'totalViews': int(views or 0),
            'totalLikes': int(likes or 0),
            'avgRating': float(rating) if rating is not None else None
        } for category, count, views, likes, rating in rows]), 200

    @app.route('/api/farming-tips/<int:id>', methods=['GET'])
    def get_farming_tip(id):
        tip = db.session.get(FarmingTip, id)
        if not tip:
            return jsonify({'message': 'Farming tip not found'}), 404

        tip.views = (tip.views or 0) + 1
        db.session.commit()
        return jsonify(tip.to_dict()), 200

    @app.route('/api/farming-tips', methods=['POST'])
    def create_farming_tip():
        try:
            tip = FarmingTip()
            tip.update_from_dict(get_json_body())
            db.session.add(tip)
            db.session.commit()
            return jsonify(tip.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/farming-tips/<int:id>', methods=['PUT'])
    def update_farming_tip(id):
        tip = db.session.get(FarmingTip, id)
        if not tip:
            return jsonify({'message': 'Farming tip not found'}), 404

        try:
            tip.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(tip.to_dict()), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/farming-tips/<int:id>/like', methods=['PUT'])
    def like_farming_tip(id):
        tip = db.session.get(FarmingTip, id)
        if not tip:
            return jsonify({'message': 'Farming tip not found'}), 404

        tip.likes = (tip.likes or 0) + 1
        db.session.commit()
        return jsonify(tip.to_dict()), 200

    # ============ Youth Training Routes ============

    @app.route('/api/youth-training', methods=['GET'])
    def get_youth_training():
        try:
            query = YouthTraining.query.filter_by(is_active=True)
            if request.args.get('category'):
                query = query.filter(YouthTraining.category == request.args['category'])
            if request.args.get('level'):
                query = query.filter(YouthTraining.level == request.args['level'])
            if request.args.get('isFree') == 'true':
                query = query.filter(YouthTraining.is_free.is_(True))

            courses = query.order_by(YouthTraining.enrollments.desc(), YouthTraining.rating_average.desc()).all()
            if request.args.get('targetAudience'):
                courses = contains_filter(courses, 'target_audience', request.args['targetAudience'])

            return jsonify([c.to_dict() for c in courses[:COURSE_LIMIT]]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/youth-training/featured', methods=['GET'])
    def get_featured_training():
        courses = YouthTraining.query.filter_by(is_active=True, is_free=True) \
            .order_by(YouthTraining.rating_average.desc(), YouthTraining.enrollments.desc()).all()
        courses = [c for c in courses if {'rural_youth', 'all'} & set(c.target_audience or [])]
        return jsonify([c.to_dict() for c in courses[:6]]), 200

    @app.route('/api/youth-training/<int:id>', methods=['GET'])
    def get_training_course(id):
        course = db.session.get(YouthTraining, id)
        if not course:
            return jsonify({'message': 'Course not found'}), 404
        return jsonify(course.to_dict()), 200

    @app.route('/api/youth-training', methods=['POST'])
    def create_training_course():
        try:
            course = YouthTraining()
            course.update_from_dict(get_json_body())
            db.session.add(course)
            db.session.commit()
            return jsonify(course.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/youth-training/<int:id>/enroll', methods=['POST'])
    def enroll_training_course(id):
        course = db.session.get(YouthTraining, id)
        if not course:
            return jsonify({'message': 'Course not found'}), 404

        course.enrollments = (course.enrollments or 0) + 1
        db.session.commit()
        return jsonify({'message': 'Enrolled successfully', 'course': course.to_dict()}), 200

    # ============ Security Report Routes ============

    @app.route('/api/security-reports', methods=['GET'])
    def get_security_reports():
        try:
            query = SecurityReport.query.filter(
                SecurityReport.is_public.is_(True),
                SecurityReport.verification_status != 'false_report'
            )
            if request.args.get('reportType'):
                query = query.filter(SecurityReport.report_type == request.args['reportType'])
            if request.args.get('location'):
                query = query.filter(SecurityReport.area == request.args['location'])
            if request.args.get('severity'):
                query = query.filter(SecurityReport.severity == request.args['severity'])
            if request.args.get('status'):
                query = query.filter(SecurityReport.status == request.args['status'])

            reports = query.order_by(SecurityReport.occurred_at.desc()).limit(REPORT_LIMIT).all()
            return jsonify([r.to_dict() for r in reports]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/security-reports/stats', methods=['GET'])
    def get_security_stats():
        area = request.args.get('area')
        base = SecurityReport.query
        if area:
            base = base.filter(SecurityReport.area == area)

        month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        overview = {
            'total': base.count(),
            'resolved': base.filter(SecurityReport.status == 'resolved').count(),
            'critical': base.filter(SecurityReport.severity == 'critical').count(),
            'thisMonth': base.filter(SecurityReport.reported_at >= month_start).count()
        }

        by_type = db.session.query(SecurityReport.report_type, func.count(SecurityReport.id))
        if area:
            by_type = by_type.filter(SecurityReport.area == area)
        by_type = by_type.group_by(SecurityReport.report_type) \
            .order_by(func.count(SecurityReport.id).desc()).all()

        return jsonify({
            'overview': overview,
            'byType': [{'_id': report_type, 'count': count} for report_type, count in by_type]
        }), 200

    @app.route('/api/security-reports', methods=['POST'])
    def create_security_report():
        try:
            report = SecurityReport()
            report.update_from_dict(get_json_body())
            if report.occurred_at is None:
                report.occurred_at = datetime.utcnow()
            db.session.add(report)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

        print(f"🚨 Security report {report.id} filed: {report.report_type} in {report.area}")
        return jsonify({'message': 'Report submitted successfully', 'reportId': report.id}), 201

    @app.route('/api/security-reports/<int:id>', methods=['GET'])
    def get_security_report(id):
        report = db.session.get(SecurityReport, id)
        if not report:
            return jsonify({'message': 'Report not found'}), 404
        return jsonify(report.to_dict()), 200
