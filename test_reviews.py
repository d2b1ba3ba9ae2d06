"""Marketplace reviews and reviewee rating aggregation"""
from datetime import datetime, timedelta

import pytest

from app import db, User, MarketplaceReview


def review_payload(reviewee, **overrides):
    payload = {
        'order_id': 'ORD-1001',
        'reviewee_id': reviewee.id,
        'reviewer_type': 'buyer',
        'rating': 5,
        'title': 'Fast and accurate',
        'comment': 'Delivered the survey answers within the hour.'
    }
    payload.update(overrides)
    return payload


def add_review(reviewer, reviewee, rating, order_id, hours_ago=0, **kwargs):
    review = MarketplaceReview(
        order_id=order_id, reviewer_id=reviewer.id, reviewee_id=reviewee.id, reviewer_type='buyer',
        rating=rating, title=kwargs.pop('title', f'{rating} stars'), comment=kwargs.pop('comment', 'ok'),
        created_at=datetime.utcnow() - timedelta(hours=hours_ago), **kwargs
    )
    db.session.add(review)
    db.session.commit()
    return review


def test_create_review_updates_reviewee_rating(client, make_user, login):
    reviewer = make_user('buyer')
    seller = make_user('seller')
    add_review(make_user('other'), seller, 2, 'ORD-1')
    login(client, reviewer)

    response = client.post('/api/marketplace/reviews', json=review_payload(seller, quality_rating=4))
    assert response.status_code == 201
    assert response.get_json()['message'] == 'Review created successfully'
    review = response.get_json()['review']
    assert review['quality_rating'] == 4
    # Missing sub-ratings default to the overall rating
    assert review['communication_rating'] == 5

    seller = db.session.get(User, seller.id)
    assert seller.rating == 3.5
    assert seller.review_count == 2


@pytest.mark.parametrize('overrides, status, error', [
    ({'title': ''}, 400, 'Missing required fields: title'),
    ({'reviewer_id': 9999}, 403, 'You can only submit reviews as yourself'),
    ({'rating': 6}, 400, 'Rating must be between 1 and 5'),
    ({'reviewer_type': 'agent'}, 400, 'reviewer_type must be buyer or seller'),
    ({'value_rating': 0}, 400, 'value_rating must be between 1 and 5'),
])
def test_create_review_validation(client, make_user, login, overrides, status, error):
    seller = make_user('seller')
    login(client, make_user('buyer'))
    response = client.post('/api/marketplace/reviews', json=review_payload(seller, **overrides))
    assert response.status_code == status
    assert response.get_json()['error'] == error


def test_cannot_review_self_or_missing_user(client, make_user, login):
    buyer = make_user('buyer')
    login(client, buyer)

    own = client.post('/api/marketplace/reviews', json=review_payload(buyer))
    assert own.get_json()['error'] == 'You cannot review yourself'

    ghost = client.post('/api/marketplace/reviews', json={**review_payload(buyer), 'reviewee_id': 9999})
    assert ghost.status_code == 404
    assert ghost.get_json()['error'] == 'Reviewee not found'


def test_one_review_per_order(client, make_user, login):
    seller = make_user('seller')
    login(client, make_user('buyer'))
    assert client.post('/api/marketplace/reviews', json=review_payload(seller)).status_code == 201

    duplicate = client.post('/api/marketplace/reviews', json=review_payload(seller, rating=1))
    assert duplicate.status_code == 409
    assert duplicate.get_json()['error'] == 'Review already exists for this order'


def test_list_reviews_filters_and_sorting(client, make_user):
    seller = make_user('seller')
    alice = make_user('alice')
    bruno = make_user('bruno')
    add_review(alice, seller, 5, 'ORD-1', hours_ago=3, comment='Perfect translation')
    add_review(bruno, seller, 3, 'ORD-2', hours_ago=2)
    add_review(alice, bruno, 1, 'ORD-3', hours_ago=1)

    newest = client.get('/api/marketplace/reviews').get_json()
    assert [r['order_id'] for r in newest['reviews']] == ['ORD-3', 'ORD-2', 'ORD-1']
    assert newest['pagination'] == {'page': 1, 'limit': 5, 'total': 3, 'totalPages': 1}

    highest = client.get(f'/api/marketplace/reviews?revieweeId={seller.id}&sortBy=highest').get_json()
    assert [r['rating'] for r in highest['reviews']] == [5, 3]

    assert [r['order_id'] for r in client.get('/api/marketplace/reviews?rating=3').get_json()['reviews']] == ['ORD-2']
    assert client.get('/api/marketplace/reviews?rating=9').status_code == 400

    by_text = client.get('/api/marketplace/reviews?search=translation').get_json()['reviews']
    assert [r['order_id'] for r in by_text] == ['ORD-1']
    by_reviewer = client.get('/api/marketplace/reviews?search=BRUNO').get_json()['reviews']
    assert [r['order_id'] for r in by_reviewer] == ['ORD-2']

    paged = client.get('/api/marketplace/reviews?limit=2&page=2').get_json()
    assert len(paged['reviews']) == 1
    assert paged['pagination']['totalPages'] == 2


def test_update_and_delete_review(client, make_user, login):
    buyer = make_user('buyer')
    seller = make_user('seller')
    login(client, buyer)
    review_id = client.post('/api/marketplace/reviews', json=review_payload(seller)).get_json()['review']['id']

    updated = client.put(f'/api/marketplace/reviews/{review_id}', json={'rating': 2, 'comment': 'Changed my mind'})
    assert updated.status_code == 200
    assert updated.get_json()['review']['comment'] == 'Changed my mind'
    assert db.session.get(User, seller.id).rating == 2.0

    assert client.put(f'/api/marketplace/reviews/{review_id}', json={'rating': 0}).status_code == 400

    login(client, seller)
    forbidden = client.put(f'/api/marketplace/reviews/{review_id}', json={'rating': 5})
    assert forbidden.status_code == 403
    assert forbidden.get_json()['error'] == 'Unauthorized to edit this review'
    assert client.delete(f'/api/marketplace/reviews/{review_id}').status_code == 403

    login(client, buyer)
    deleted = client.delete(f'/api/marketplace/reviews/{review_id}')
    assert deleted.get_json()['message'] == 'Review deleted successfully'

    seller = db.session.get(User, seller.id)
    assert seller.rating == 0.0
    assert seller.review_count == 0
    assert client.get('/api/marketplace/reviews').get_json()['reviews'] == []
    assert client.delete(f'/api/marketplace/reviews/{review_id}').get_json()['error'] == 'Review not found'
