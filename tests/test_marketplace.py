import pytest

from models import db, ProductListing, MarketplaceTransaction, Favorite
from marketplace_routes import can_transition, calculate_delivery_fee, price_order


def make_listing(seller=None, **fields):
    listing = ProductListing(
        seller_id=seller.id if seller else None,
        title='Fresh white yam',
        description='Harvested this week',
        crop_name='yam',
        quantity_available=fields.pop('quantity_available', 100),
        quantity_unit='tuber',
        price_per_unit=fields.pop('price_per_unit', 1000),
        state='Kwara',
        lga='Ifelodun',
        **fields
    )
    if seller:
        db.session.add(listing)
        db.session.commit()
    return listing


def test_status_transitions_follow_roles():
    assert can_transition('pending', 'accepted', 'seller')
    assert not can_transition('pending', 'accepted', 'buyer')
    assert can_transition('pending', 'cancelled', 'buyer')
    assert can_transition('delivered', 'completed', 'buyer')
    assert not can_transition('completed', 'pending', 'seller')
    assert not can_transition('pending', 'delivered', 'seller')


def test_delivery_fee_by_destination(app):
    listing = make_listing(delivery_cost={'local': 200})
    assert calculate_delivery_fee(listing, 'pickup', {'state': 'Lagos'}) == 0
    assert calculate_delivery_fee(listing, 'farm_gate', None) == 0
    assert calculate_delivery_fee(listing, 'local_delivery', {'state': 'Kwara'}) == 200
    assert calculate_delivery_fee(listing, 'shipping', {'state': 'Lagos'}) == 1500
    assert calculate_delivery_fee(listing, 'shipping', {}) == 3000


def test_price_order_uses_best_bulk_tier(app):
    listing = make_listing(bulk_pricing=[
        {'minQuantity': 10, 'pricePerUnit': 900},
        {'minQuantity': 50, 'pricePerUnit': 800},
    ])
    assert price_order(listing, 5, 'pickup', {})['unitPrice'] == 1000
    assert price_order(listing, 10, 'pickup', {})['unitPrice'] == 900

    totals = price_order(listing, 60, 'local_delivery', {'state': 'Kwara'})
    assert totals['unitPrice'] == 800
    assert totals['totalAmount'] == 48000
    assert totals['deliveryFee'] == 500
    assert totals['platformFee'] == pytest.approx(1440)
    assert totals['grandTotal'] == pytest.approx(49940)


def test_buyer_places_order(client, make_user, auth_headers):
    seller = make_user()
    buyer = make_user(role='buyer')
    listing = make_listing(seller)

    response = client.post('/api/marketplace/orders', headers=auth_headers(buyer), json={
        'listingId': listing.id,
        'quantity': 10,
        'paymentMethod': 'bank_transfer',
        'deliveryMethod': 'pickup'
    })
    body = response.get_json()
    assert response.status_code == 201
    assert body['data']['transaction']['orderDetails']['grandTotal'] == pytest.approx(10300)
    assert db.session.get(ProductListing, listing.id).quantity_available == 90


def test_order_guards(client, make_user, auth_headers):
    seller = make_user()
    buyer = make_user(role='buyer')
    listing = make_listing(seller, quantity_available=5)
    order = {'listingId': listing.id, 'paymentMethod': 'cash', 'deliveryMethod': 'pickup'}

    own = client.post('/api/marketplace/orders', headers=auth_headers(seller), json=dict(order, quantity=1))
    assert own.get_json()['message'] == 'You cannot buy your own product'

    too_many = client.post('/api/marketplace/orders', headers=auth_headers(buyer), json=dict(order, quantity=6))
    assert too_many.get_json()['message'] == 'Insufficient quantity available'

    missing = client.post('/api/marketplace/orders', headers=auth_headers(buyer),
                          json=dict(order, listingId=999, quantity=1))
    assert missing.status_code == 404


def test_only_seller_accepts_order(client, make_user, auth_headers):
    seller = make_user()
    buyer = make_user(role='buyer')
    listing = make_listing(seller)
    client.post('/api/marketplace/orders', headers=auth_headers(buyer), json={
        'listingId': listing.id, 'quantity': 2, 'paymentMethod': 'cash', 'deliveryMethod': 'pickup'
    })
    order = MarketplaceTransaction.query.first()

    rejected = client.patch(f'/api/marketplace/orders/{order.id}/status',
                            headers=auth_headers(buyer), json={'status': 'accepted'})
    assert rejected.status_code == 400
    assert rejected.get_json()['message'] == 'Invalid status transition'

    accepted = client.patch(f'/api/marketplace/orders/{order.id}/status',
                            headers=auth_headers(seller), json={'status': 'accepted'})
    assert accepted.status_code == 200
    assert accepted.get_json()['data']['transaction']['status'] == 'accepted'


def test_listing_detail_is_public(client, make_user, auth_headers):
    seller = make_user(role='trader')
    buyer = make_user(role='buyer')
    listing = make_listing(seller)
    db.session.add(Favorite(user_id=buyer.id, listing_id=listing.id))
    db.session.commit()

    response = client.get(f'/api/marketplace/listings/{listing.id}')
    assert response.status_code == 200
    assert response.get_json()['data']['listing']['isFavorited'] is False

    response = client.get(f'/api/marketplace/listings/{listing.id}', headers=auth_headers(buyer))
    assert response.get_json()['data']['listing']['isFavorited'] is True
    assert db.session.get(ProductListing, listing.id).views == 2
