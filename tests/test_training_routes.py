from models import db, YouthTraining, Transaction


def make_course(**fields):
    course = YouthTraining(
        title_english='Digital Farming Basics',
        title_yoruba='Ipilẹ Oko Oni-nọmba',
        description_english='Using phones to plan and sell',
        description_yoruba='Lilo foonu fun oko',
        category='digital_farming',
        duration_value=6,
        modules=[{'title': 'Intro', 'order': 1}, {'title': 'Selling', 'order': 2}],
        certification_available=True,
        **fields
    )
    db.session.add(course)
    db.session.commit()
    return course


def test_enroll_in_free_course(client, make_user, auth_headers):
    user = make_user(role='youth')
    course = make_course()

    response = client.post(f'/api/training/courses/{course.id}/enroll', headers=auth_headers(user))
    assert response.status_code == 200
    assert response.get_json()['data']['enrollment']['courseId'] == course.id
    assert db.session.get(YouthTraining, course.id).enrollments == 1

    again = client.post(f'/api/training/courses/{course.id}/enroll', headers=auth_headers(user))
    assert again.status_code == 400
    assert again.get_json()['message'] == 'You are already enrolled in this course'


def test_paid_course_asks_free_user_to_pay(client, make_user, auth_headers):
    user = make_user(role='youth')
    course = make_course(is_free=False, cost=5000)

    response = client.post(f'/api/training/courses/{course.id}/enroll', headers=auth_headers(user))
    body = response.get_json()
    assert response.status_code == 402
    assert body['status'] == 'payment_required'
    assert body['data']['transaction']['amount'] == 5000

    transaction = Transaction.query.filter_by(user_id=user.id).one()
    assert transaction.type == 'training_course'
    assert transaction.status == 'pending'


def test_passing_score_issues_certificate(client, make_user, auth_headers):
    user = make_user(role='youth')
    course = make_course()
    headers = auth_headers(user)
    client.post(f'/api/training/courses/{course.id}/enroll', headers=headers)

    not_yet = client.get(f'/api/training/certificates/{course.id}', headers=headers)
    assert not_yet.status_code == 400

    response = client.post(f'/api/training/courses/{course.id}/progress', headers=headers,
                           json={'completed': True, 'score': 85})
    progress = response.get_json()['data']['progress']
    assert progress['completed'] is True
    assert progress['certificateIssued'] is True

    certificate = client.get(f'/api/training/certificates/{course.id}', headers=headers)
    assert certificate.status_code == 200
    assert certificate.mimetype == 'application/pdf'
    assert certificate.data.startswith(b'%PDF')


def test_failing_score_keeps_course_in_progress(client, make_user, auth_headers):
    user = make_user(role='youth')
    course = make_course()
    headers = auth_headers(user)
    client.post(f'/api/training/courses/{course.id}/enroll', headers=headers)
    client.post(f'/api/training/courses/{course.id}/progress', headers=headers,
                json={'completed': True, 'score': 60})

    body = client.get('/api/training/my-courses?status=in_progress', headers=headers).get_json()
    assert len(body['data']['courses']) == 1
    assert body['data']['courses'][0]['progress']['completedModules'] == 1

    completed = client.get('/api/training/my-courses?status=completed', headers=headers).get_json()
    assert completed['data']['courses'] == []


def test_only_managers_create_courses(client, make_user, auth_headers):
    farmer = make_user()
    response = client.post('/api/training/courses', headers=auth_headers(farmer), json={})
    assert response.status_code == 403
