import io
from datetime import datetime, timedelta

from flask import request, g, send_file
from sqlalchemy import func, case

from models import db, YouthTraining, CourseEnrollment, Transaction, UsageTracking, User
from helpers import success_response, fail_response, error_response, get_json_body, paginate, apply_sort
from security import protect, require_subscription
from payments import generate_reference
from exports import training_certificate

PASSING_SCORE = 80
COURSE_MANAGERS = ('admin', 'extension_officer')

COURSE_SORT_FIELDS = {
    'createdAt': 'created_at',
    'enrollments': 'enrollments',
    'rating': 'rating_average',
    'cost': 'cost'
}

TIMEFRAMES = {'week': 7, 'month': 30, 'year': 365}


def find_enrollment(user_id, course_id):
    return CourseEnrollment.query.filter_by(user_id=user_id, course_id=course_id).first()


def can_access_course(user, course, enrollment):
    return bool(course.is_free or 'training_certificates' in (user.subscription_features or []) or enrollment)


def register_training_routes(app):

    # ============ Training Catalog Routes ============

    @app.route('/api/training/courses', methods=['GET'])
    @protect
    def list_training_courses():
        user = g.user
        args = request.args
        query = YouthTraining.query.filter_by(is_active=True)
        if args.get('category'):
            query = query.filter(YouthTraining.category == args['category'])
        if args.get('level'):
            query = query.filter(YouthTraining.level == args['level'])
        if 'isFree' in args:
            query = query.filter(YouthTraining.is_free.is_(args['isFree'] == 'true'))

        sort_by = COURSE_SORT_FIELDS.get(args.get('sortBy', 'createdAt'), 'created_at')
        query = apply_sort(query, YouthTraining, sort_by, args.get('sortOrder', 'desc'))
        courses, pagination = paginate(query, args.get('page', 1, type=int), args.get('limit', 20, type=int))

        enrolled_ids = {
            e.course_id for e in CourseEnrollment.query.filter_by(user_id=user.id).all()
        }
        payload = []
        for course in courses:
            data = course.to_dict()
            data['isEnrolled'] = course.id in enrolled_ids
            data['canAccess'] = can_access_course(user, course, course.id in enrolled_ids)
            payload.append(data)

        UsageTracking.increment_usage(user.id, 'training_access')
        db.session.commit()

        return success_response({'courses': payload, 'pagination': pagination}, results=len(payload))

    @app.route('/api/training/courses/<int:id>', methods=['GET'])
    @protect
    def get_course_detail(id):
        course = db.session.get(YouthTraining, id)
        if not course or not course.is_active:
            return fail_response('Course not found', 404)

        enrollment = find_enrollment(g.user.id, course.id)
        total_modules = len(course.modules or [])
        if enrollment:
            progress = enrollment.progress_dict(total_modules)
        else:
            progress = {
                'isEnrolled': False,
                'completedModules': 0,
                'totalModules': total_modules,
                'completionPercentage': 0,
                'certificateIssued': False,
                'enrolledAt': None,
                'score': None
            }

        data = course.to_dict()
        data['canAccess'] = can_access_course(g.user, course, enrollment)
        data['progress'] = progress
        return success_response({'course': data})

    @app.route('/api/training/courses/<int:id>/enroll', methods=['POST'])
    @protect
    def enroll_in_course(id):
        user = g.user
        course = db.session.get(YouthTraining, id)
        if not course or not course.is_active:
            return fail_response('Course not found', 404)

        if find_enrollment(user.id, course.id):
            return fail_response('You are already enrolled in this course')

        if not course.is_free:
            has_access = 'training_certificates' in (user.subscription_features or []) or \
                user.subscription_tier != 'free'
            if not has_access:
                transaction = Transaction(
                    user_id=user.id,
                    reference=generate_reference('TRN'),
                    amount=course.cost or 0,
                    type='training_course',
                    provider='paystack',
                    details={
                        'description': f"Enrollment in {course.title_english}",
                        'customFields': {'courseId': str(course.id), 'courseName': course.title_english}
                    }
                )
                db.session.add(transaction)
                db.session.commit()
                return success_response({
                    'transaction': {
                        'reference': transaction.reference,
                        'amount': transaction.amount,
                        'course': {'id': course.id, 'title': course.title_english, 'cost': course.cost}
                    }
                }, 402, message='Payment required for this course', status='payment_required')

        try:
            enrollment = CourseEnrollment(user_id=user.id, course_id=course.id, score=0)
            db.session.add(enrollment)
            course.enrollments = (course.enrollments or 0) + 1
            UsageTracking.increment_usage(user.id, 'training_access')
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Enroll course error: {e}")
            return error_response('Failed to enroll in course', 500)

        return success_response({
            'enrollment': {
                'courseId': course.id,
                'courseTitle': course.title_english,
                'enrolledAt': enrollment.enrolled_at.isoformat(),
                'progress': 0
            }
        }, message='Successfully enrolled in course')

    @app.route('/api/training/courses/<int:id>/progress', methods=['POST'])
    @protect
    def update_course_progress(id):
        user = g.user
        data = get_json_body()
        course = db.session.get(YouthTraining, id)
        if not course:
            return fail_response('Course not found', 404)

        enrollment = find_enrollment(user.id, course.id)
        if not enrollment:
            return fail_response('You are not enrolled in this course')

        score = data.get('score')
        if data.get('completed') and score is not None:
            enrollment.score = max(enrollment.score or 0, float(score))
            enrollment.completed_at = datetime.utcnow()
            if float(score) >= PASSING_SCORE and not enrollment.certificate_issued \
                    and course.certification_available:
                enrollment.certificate_issued = True
                course.completions = (course.completions or 0) + 1

        UsageTracking.increment_usage(user.id, 'training_access')
        db.session.commit()

        return success_response({
            'progress': {
                'score': enrollment.score,
                'completed': (enrollment.score or 0) >= PASSING_SCORE,
                'certificateIssued': enrollment.certificate_issued,
                'completedAt': enrollment.completed_at.isoformat() if enrollment.completed_at else None
            }
        }, message='Progress updated successfully')

    @app.route('/api/training/my-courses', methods=['GET'])
    @protect
    def get_my_courses():
        status = request.args.get('status', 'all')
        query = db.session.query(YouthTraining, CourseEnrollment) \
            .join(CourseEnrollment, CourseEnrollment.course_id == YouthTraining.id) \
            .filter(CourseEnrollment.user_id == g.user.id)
        if status == 'completed':
            query = query.filter(CourseEnrollment.score >= PASSING_SCORE)
        elif status == 'in_progress':
            query = query.filter((CourseEnrollment.score < PASSING_SCORE) | CourseEnrollment.score.is_(None))

        rows, pagination = paginate(
            query.order_by(YouthTraining.updated_at.desc()),
            request.args.get('page', 1, type=int),
            request.args.get('limit', 20, type=int)
        )

        courses = []
        for course, enrollment in rows:
            data = course.to_dict()
            data['progress'] = enrollment.progress_dict(len(course.modules or []))
            courses.append(data)
        return success_response({'courses': courses, 'pagination': pagination}, results=len(courses))

    @app.route('/api/training/certificates/<int:course_id>', methods=['GET'])
    @protect
    def download_certificate(course_id):
        user = g.user
        course = db.session.get(YouthTraining, course_id)
        if not course:
            return fail_response('Course not found', 404)

        enrollment = find_enrollment(user.id, course.id)
        if not enrollment or not enrollment.certificate_issued:
            return fail_response('Certificate not available. Complete the course with 80% or higher score.')

        try:
            pdf = training_certificate(user, course, enrollment)
        except Exception as e:
            print(f"❌ Certificate generation error: {e}")
            return error_response('Failed to generate certificate', 500)

        UsageTracking.increment_usage(user.id, 'training_access')
        db.session.commit()

        return send_file(
            io.BytesIO(pdf),
            mimetype='application/pdf',
            as_attachment=True,
            download_name=f"certificate_{course.id}_{user.id}.pdf"
        )

    @app.route('/api/training/analytics', methods=['GET'])
    @protect
    @require_subscription('premium')
    def training_analytics():
        course_id = request.args.get('courseId', type=int)
        timeframe = request.args.get('timeframe', 'month')

        if course_id:
            course = db.session.get(YouthTraining, course_id)
            if not course:
                return fail_response('Course not found', 404)

            rows = db.session.query(CourseEnrollment, User) \
                .join(User, User.id == CourseEnrollment.user_id) \
                .filter(CourseEnrollment.course_id == course.id).all()
            enrollments = [{
                'user': {'name': user.full_name, 'id': user.id},
                'enrolledAt': enrollment.enrolled_at.isoformat() if enrollment.enrolled_at else None,
                'score': enrollment.score,
                'certificateIssued': enrollment.certificate_issued
            } for enrollment, user in rows]
            scores = [e['score'] or 0 for e in enrollments]

            return success_response({'analytics': {
                'course': {
                    'title': course.title_english,
                    'totalEnrollments': course.enrollments or 0,
                    'completions': course.completions or 0,
                    'completionRate': (course.completions or 0) / course.enrollments * 100 if course.enrollments else 0,
                    'averageRating': course.rating_average
                },
                'enrollments': enrollments,
                'statistics': {
                    'averageScore': sum(scores) / len(scores) if scores else 0,
                    'certificatesIssued': len([e for e in enrollments if e['certificateIssued']]),
                    'highPerformers': len([s for s in scores if s >= 90]),
                    'lowPerformers': len([s for s in scores if s < 60])
                }
            }})

        overview = db.session.query(
            YouthTraining.category,
            func.count(YouthTraining.id),
            func.sum(YouthTraining.enrollments),
            func.sum(YouthTraining.completions),
            func.avg(YouthTraining.rating_average),
            func.sum(case((YouthTraining.is_free.is_(False), 1), else_=0)),
            func.sum(case((YouthTraining.is_free.is_(True), 1), else_=0))
        ).filter(YouthTraining.is_active.is_(True)) \
            .group_by(YouthTraining.category) \
            .order_by(func.sum(YouthTraining.enrollments).desc()).all()

        revenue_query = db.session.query(
            func.sum(Transaction.amount), func.count(Transaction.id), func.avg(Transaction.amount)
        ).filter(Transaction.type == 'training_course', Transaction.status == 'successful')
        if timeframe in TIMEFRAMES:
            revenue_query = revenue_query.filter(
                Transaction.created_at >= datetime.utcnow() - timedelta(days=TIMEFRAMES[timeframe])
            )
        total_revenue, total_transactions, average_value = revenue_query.one()

        return success_response({'analytics': {
            'overview': [{
                '_id': category,
                'totalCourses': count,
                'totalEnrollments': int(enrollments or 0),
                'totalCompletions': int(completions or 0),
                'averageRating': float(rating) if rating is not None else None,
                'paidCourses': int(paid or 0),
                'freeCourses': int(free or 0)
            } for category, count, enrollments, completions, rating, paid, free in overview],
            'revenue': {
                'totalRevenue': float(total_revenue or 0),
                'totalTransactions': total_transactions or 0,
                'averageTransactionValue': float(average_value or 0)
            },
            'timeframe': timeframe
        }})

    # ============ Course Management Routes ============

    @app.route('/api/training/courses', methods=['POST'])
    @protect
    def create_course():
        if g.user.role not in COURSE_MANAGERS:
            return fail_response('You do not have permission to create courses', 403)

        try:
            course = YouthTraining()
            course.update_from_dict(get_json_body())
            db.session.add(course)
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Create course error: {e}")
            return error_response(str(e) or 'Failed to create course', 500)

        return success_response({'course': course.to_dict()}, 201, message='Course created successfully')

    @app.route('/api/training/courses/<int:id>', methods=['PATCH'])
    @protect
    def update_course(id):
        if g.user.role not in COURSE_MANAGERS:
            return fail_response('You do not have permission to update courses', 403)

        course = db.session.get(YouthTraining, id)
        if not course:
            return fail_response('Course not found', 404)

        try:
            course.update_from_dict(get_json_body())
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))

        return success_response({'course': course.to_dict()}, message='Course updated successfully')
