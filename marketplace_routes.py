import json
import logging
import os
from datetime import datetime, timedelta

from flask import request, g, current_app
from werkzeug.utils import secure_filename
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import (
    db, ProductListing, MarketplaceTransaction, BuyerRequest, Favorite, Review, UsageTracking
)
from helpers import success_response, fail_response, error_response, get_json_body, paginate, apply_sort
from security import protect, optional_auth, require_subscription
from notifications import notification_service

logger = logging.getLogger(__name__)

PLATFORM_FEE_RATE = 0.03
REQUEST_LIFETIME = timedelta(days=30)

# None means unlimited
LISTING_LIMITS = {'free': 3, 'basic': 10, 'premium': 50}

DEFAULT_DELIVERY_COSTS = {'local': 500, 'regional': 1500, 'national': 3000}

LISTING_SORT_FIELDS = {
    'createdAt': 'created_at',
    'price': 'price_per_unit',
    'pricing.pricePerUnit': 'price_per_unit',
    'views': 'views',
    'quantity': 'quantity_available'
}

# status -> {next status: roles allowed to move there}
STATUS_TRANSITIONS = {
    'pending': {'accepted': ('seller',), 'cancelled': ('seller', 'buyer')},
    'accepted': {'payment_pending': ('seller', 'buyer')},
    'payment_pending': {'paid': ('seller', 'buyer')},
    'paid': {'preparing': ('seller',)},
    'preparing': {'ready_for_pickup': ('seller',), 'in_transit': ('seller',)},
    'ready_for_pickup': {'delivered': ('seller', 'buyer')},
    'in_transit': {'delivered': ('seller', 'buyer')},
    'delivered': {'completed': ('seller', 'buyer')},
    'disputed': {'resolved': ('seller', 'buyer')}
}

IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
MAX_LISTING_IMAGES = 5


def allowed_image(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in IMAGE_EXTENSIONS


def save_listing_image(file):
    """Stores an uploaded listing photo and returns its filename, or None."""
    if not file or not file.filename or not allowed_image(file.filename):
        print(f"❌ Invalid listing image: {getattr(file, 'filename', None)}")
        return None

    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], 'marketplace')
    os.makedirs(folder, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
    filename = f"{timestamp}_{secure_filename(file.filename)}"
    file.save(os.path.join(folder, filename))
    return filename


def listing_images(files):
    images = []
    for index, file in enumerate(files[:MAX_LISTING_IMAGES]):
        filename = save_listing_image(file)
        if filename:
            images.append({
                'url': f"/static/uploads/marketplace/{filename}",
                'description': f"Image {index + 1}",
                'isPrimary': not images
            })
    return images


def can_transition(current, new, role):
    return role in STATUS_TRANSITIONS.get(current, {}).get(new, ())


def calculate_delivery_fee(listing, delivery_method, delivery_address):
    if delivery_method in ('pickup', 'farm_gate'):
        return 0

    costs = listing.delivery_cost or {}
    state = (delivery_address or {}).get('state')
    if not state:
        key = 'national'
    elif state == listing.state:
        key = 'local'
    else:
        key = 'regional'
    return costs.get(key) or DEFAULT_DELIVERY_COSTS[key]


def price_order(listing, quantity, delivery_method, delivery_address):
    unit_price = listing.price_for_quantity(quantity)
    total = unit_price * quantity
    delivery_fee = calculate_delivery_fee(listing, delivery_method, delivery_address)
    platform_fee = total * PLATFORM_FEE_RATE
    return {
        'unitPrice': unit_price,
        'totalAmount': total,
        'deliveryFee': delivery_fee,
        'platformFee': platform_fee,
        'grandTotal': total + delivery_fee + platform_fee
    }


def register_marketplace_routes(app):

    # ============ Product Listing Routes ============

    @app.route('/api/marketplace/listings', methods=['GET'])
    @protect
    def get_listings():
        args = request.args
        query = ProductListing.query.filter_by(is_active=True)
        if args.get('crop'):
            query = query.filter(ProductListing.crop_name == args['crop'])
        if args.get('state'):
            query = query.filter(ProductListing.state == args['state'])
        if args.get('lga'):
            query = query.filter(ProductListing.lga == args['lga'])
        if args.get('quality'):
            query = query.filter(ProductListing.quality_grade == args['quality'])
        if args.get('availability'):
            query = query.filter(ProductListing.availability_status == args['availability'])
        if args.get('minPrice'):
            query = query.filter(ProductListing.price_per_unit >= args.get('minPrice', type=float))
        if args.get('maxPrice'):
            query = query.filter(ProductListing.price_per_unit <= args.get('maxPrice', type=float))

        sort_by = LISTING_SORT_FIELDS.get(args.get('sortBy', 'createdAt'), 'created_at')
        query = apply_sort(query, ProductListing, sort_by, args.get('sortOrder', 'desc'))

        listings, pagination = paginate(query, args.get('page', 1, type=int), args.get('limit', 20, type=int))

        UsageTracking.increment_usage(g.user.id, 'marketplace_listing', details={'action': 'browse'})
        db.session.commit()

        return success_response({
            'listings': [l.to_dict(seller=True) for l in listings],
            'pagination': pagination
        }, results=len(listings))

    @app.route('/api/marketplace/listings/<int:id>', methods=['GET'])
    @optional_auth
    def get_listing(id):
        listing = db.session.get(ProductListing, id)
        if not listing or not listing.is_active:
            return fail_response('Listing not found', 404)

        listing.views = (listing.views or 0) + 1
        db.session.commit()

        favorited = g.user is not None and \
            Favorite.query.filter_by(user_id=g.user.id, listing_id=listing.id).first() is not None
        data = listing.to_dict(seller=True)
        data['isFavorited'] = favorited
        return success_response({'listing': data})

    @app.route('/api/marketplace/listings', methods=['POST'])
    @protect
    @require_subscription('free', 'marketplace_access')
    def create_listing():
        user = g.user
        limit = LISTING_LIMITS.get(user.subscription_tier)
        if limit is not None and user.role != 'admin':
            current = ProductListing.query.filter_by(seller_id=user.id, is_active=True).count()
            if current >= limit:
                return fail_response('Listing limit exceeded for your subscription tier', 429,
                                     limit=limit, current=current)

        # multipart uploads carry the listing as a JSON "data" field
        if request.form.get('data'):
            data = json.loads(request.form['data'])
        else:
            data = get_json_body()
        files = request.files.getlist('images')
        if len(files) > MAX_LISTING_IMAGES:
            return fail_response(f"A listing can have at most {MAX_LISTING_IMAGES} images")
        try:
            listing = ProductListing(seller_id=user.id)
            listing.update_from_dict(data)
            if files:
                listing.images = listing_images(files)
            listing.state = user.state
            listing.lga = user.lga
            db.session.add(listing)
            UsageTracking.increment_usage(user.id, 'marketplace_listing', details={'action': 'create'})
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Create listing error: {e}")
            return error_response('Failed to create listing', 500)

        return success_response({'listing': listing.to_dict()}, 201, message='Listing created successfully')

    @app.route('/api/marketplace/listings/<int:id>', methods=['PATCH'])
    @protect
    def update_listing(id):
        listing = ProductListing.query.filter_by(id=id, seller_id=g.user.id).first()
        if not listing:
            return fail_response('Listing not found or you do not have permission to edit it', 404)

        try:
            listing.update_from_dict(get_json_body())
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        return success_response({'listing': listing.to_dict()}, message='Listing updated successfully')

    @app.route('/api/marketplace/listings/<int:id>', methods=['DELETE'])
    @protect
    def delete_listing(id):
        listing = ProductListing.query.filter_by(id=id, seller_id=g.user.id).first()
        if not listing:
            return fail_response('Listing not found or you do not have permission to delete it', 404)

        listing.is_active = False
        db.session.commit()
        return success_response(message='Listing deleted successfully')

    # ============ Order Routes ============

    @app.route('/api/marketplace/orders', methods=['POST'])
    @protect
    def create_order():
        user = g.user
        data = get_json_body()
        delivery_method = data.get('deliveryMethod')
        delivery_address = data.get('deliveryAddress') or {}

        try:
            quantity = float(data.get('quantity'))
        except (TypeError, ValueError):
            return fail_response('quantity must be a number')

        listing = ProductListing.query.filter_by(
            id=data.get('listingId'), is_active=True, availability_status='available'
        ).first()
        if not listing:
            return fail_response('Listing not found or no longer available', 404)
        if listing.seller_id == user.id:
            return fail_response('You cannot buy your own product')
        if quantity > listing.quantity_available:
            return fail_response('Insufficient quantity available')

        totals = price_order(listing, quantity, delivery_method, delivery_address)
        try:
            order = MarketplaceTransaction(
                buyer_id=user.id,
                seller_id=listing.seller_id,
                listing_id=listing.id,
                quantity=quantity,
                unit_price=totals['unitPrice'],
                total_amount=totals['totalAmount'],
                delivery_fee=totals['deliveryFee'],
                platform_fee=totals['platformFee'],
                grand_total=totals['grandTotal'],
                payment_method=data.get('paymentMethod'),
                delivery_method=delivery_method,
                delivery_address=delivery_address,
                delivery_notes=data.get('notes')
            )
            order.add_timeline('pending', 'Order created', user.id)
            listing.quantity_available -= quantity
            listing.inquiries = (listing.inquiries or 0) + 1
            db.session.add(order)
            UsageTracking.increment_usage(user.id, 'marketplace_listing', details={'action': 'order'})
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Create order error: {e}")
            return error_response('Failed to create order', 500)

        try:
            notification_service.send_marketplace_notification(user.id, listing.seller_id, 'order_placed', {
                'productName': listing.title,
                'quantity': f"{quantity:g} {listing.quantity_unit}",
                'currency': listing.currency,
                'amount': f"{order.grand_total:,.2f}",
                'buyerName': user.full_name
            })
        except Exception as e:
            logger.error("Order notification failed for order %s: %s", order.id, e)

        return success_response({'transaction': order.to_dict()}, 201, message='Order created successfully')

    @app.route('/api/marketplace/orders', methods=['GET'])
    @protect
    def get_orders():
        user = g.user
        order_type = request.args.get('type', 'all')
        query = MarketplaceTransaction.query
        if order_type == 'buying':
            query = query.filter(MarketplaceTransaction.buyer_id == user.id)
        elif order_type == 'selling':
            query = query.filter(MarketplaceTransaction.seller_id == user.id)
        else:
            query = query.filter(or_(
                MarketplaceTransaction.buyer_id == user.id,
                MarketplaceTransaction.seller_id == user.id
            ))
        if request.args.get('status'):
            query = query.filter(MarketplaceTransaction.status == request.args['status'])

        orders, pagination = paginate(
            query.order_by(MarketplaceTransaction.created_at.desc()),
            request.args.get('page', 1, type=int),
            request.args.get('limit', 20, type=int)
        )
        return success_response({
            'transactions': [o.to_dict() for o in orders],
            'pagination': pagination
        }, results=len(orders))

    @app.route('/api/marketplace/orders/<int:id>/status', methods=['PATCH'])
    @protect
    def update_order_status(id):
        user = g.user
        data = get_json_body()
        new_status = data.get('status')

        order = MarketplaceTransaction.query.filter(
            MarketplaceTransaction.id == id,
            or_(MarketplaceTransaction.buyer_id == user.id, MarketplaceTransaction.seller_id == user.id)
        ).first()
        if not order:
            return fail_response('Transaction not found', 404)

        role = 'seller' if order.seller_id == user.id else 'buyer'
        if not can_transition(order.status, new_status, role):
            return fail_response('Invalid status transition')

        order.status = new_status
        order.add_timeline(new_status, data.get('note') or f"Status updated to {new_status}", user.id)
        if new_status == 'completed':
            order.commission_paid = True
        db.session.commit()

        if new_status == 'accepted':
            try:
                notification_service.send_marketplace_notification(order.buyer_id, order.seller_id, 'order_accepted', {
                    'productName': order.listing.title if order.listing else '',
                    'deliveryDate': data.get('deliveryDate') or 'To be confirmed'
                })
            except Exception as e:
                logger.error("Order notification failed for order %s: %s", order.id, e)

        return success_response({'transaction': order.to_dict()}, message='Transaction status updated successfully')

    # ============ Buyer Request Routes ============

    @app.route('/api/marketplace/requests', methods=['POST'])
    @protect
    def create_buyer_request():
        try:
            buyer_request = BuyerRequest(buyer_id=g.user.id, expires_at=datetime.utcnow() + REQUEST_LIFETIME)
            buyer_request.update_from_dict(get_json_body())
            db.session.add(buyer_request)
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Create buyer request error: {e}")
            return error_response('Failed to create buyer request', 500)

        return success_response({'request': buyer_request.to_dict()}, 201, message='Buyer request created successfully')

    @app.route('/api/marketplace/requests', methods=['GET'])
    @protect
    def get_buyer_requests():
        query = BuyerRequest.query.filter(
            BuyerRequest.is_active.is_(True),
            BuyerRequest.expires_at > datetime.utcnow()
        )
        if request.args.get('crop'):
            query = query.filter(BuyerRequest.crop_name == request.args['crop'])
        query = query.order_by(BuyerRequest.created_at.desc())

        state = request.args.get('state')
        page = request.args.get('page', 1, type=int)
        limit = request.args.get('limit', 20, type=int)
        if state:
            # preferredStates lives in a JSON column
            rows = [r for r in query.all() if state in ((r.location or {}).get('preferredStates') or [])]
            total = len(rows)
            page = max(page, 1)
            requests_page = rows[(page - 1) * limit:page * limit]
            pagination = {'page': page, 'pages': -(-total // limit) if limit else 0, 'total': total, 'limit': limit}
        else:
            requests_page, pagination = paginate(query, page, limit)

        return success_response({
            'requests': [r.to_dict() for r in requests_page],
            'pagination': pagination
        }, results=len(requests_page))

    @app.route('/api/marketplace/requests/<int:id>/respond', methods=['POST'])
    @protect
    def respond_to_buyer_request(id):
        user = g.user
        data = get_json_body()
        buyer_request = BuyerRequest.query.filter(
            BuyerRequest.id == id,
            BuyerRequest.is_active.is_(True),
            BuyerRequest.expires_at > datetime.utcnow()
        ).first()
        if not buyer_request:
            return fail_response('Buyer request not found or expired', 404)

        responses = list(buyer_request.responses or [])
        if any(r.get('seller') == user.id for r in responses):
            return fail_response('You have already responded to this request')

        responses.append({
            'seller': user.id,
            'listing': data.get('listingId'),
            'message': data.get('message'),
            'proposedPrice': data.get('proposedPrice'),
            'proposedQuantity': data.get('proposedQuantity'),
            'respondedAt': datetime.utcnow().isoformat()
        })
        buyer_request.responses = responses
        if buyer_request.status == 'open':
            buyer_request.status = 'in_negotiation'
        db.session.commit()

        return success_response({'request': buyer_request.to_dict()}, message='Response submitted successfully')

    # ============ Favorite Routes ============

    @app.route('/api/marketplace/favorites', methods=['POST'])
    @protect
    def add_favorite():
        data = get_json_body()
        listing = db.session.get(ProductListing, data.get('listingId') or 0)
        if not listing or not listing.is_active:
            return fail_response('Listing not found', 404)

        try:
            favorite = Favorite(user_id=g.user.id, listing_id=listing.id, notes=data.get('notes'))
            db.session.add(favorite)
            listing.favorites = (listing.favorites or 0) + 1
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return fail_response('Listing already in favorites')

        return success_response({'favorite': favorite.to_dict()}, 201, message='Added to favorites')

    @app.route('/api/marketplace/favorites/<int:listing_id>', methods=['DELETE'])
    @protect
    def remove_favorite(listing_id):
        favorite = Favorite.query.filter_by(user_id=g.user.id, listing_id=listing_id).first()
        if not favorite:
            return fail_response('Favorite not found', 404)

        listing = favorite.listing
        db.session.delete(favorite)
        if listing:
            listing.favorites = max((listing.favorites or 0) - 1, 0)
        db.session.commit()
        return success_response(message='Removed from favorites')

    @app.route('/api/marketplace/favorites', methods=['GET'])
    @protect
    def get_favorites():
        query = Favorite.query.filter_by(user_id=g.user.id).order_by(Favorite.created_at.desc())
        favorites, pagination = paginate(
            query, request.args.get('page', 1, type=int), request.args.get('limit', 20, type=int)
        )
        return success_response({
            'favorites': [f.to_dict() for f in favorites],
            'pagination': pagination
        }, results=len(favorites))

    # ============ Review Routes ============

    @app.route('/api/marketplace/reviews', methods=['POST'])
    @protect
    def create_review():
        user = g.user
        data = get_json_body()
        rating = data.get('rating') or {}

        order = MarketplaceTransaction.query.filter(
            MarketplaceTransaction.id == data.get('transactionId'),
            MarketplaceTransaction.status == 'completed',
            or_(MarketplaceTransaction.buyer_id == user.id, MarketplaceTransaction.seller_id == user.id)
        ).first()
        if not order:
            return fail_response('Transaction not found or not completed', 404)

        if Review.query.filter_by(transaction_id=order.id, reviewer_id=user.id).first():
            return fail_response('Review already exists for this transaction')

        try:
            review = Review(
                reviewer_id=user.id,
                reviewee_id=order.seller_id if order.buyer_id == user.id else order.buyer_id,
                transaction_id=order.id,
                rating_overall=rating.get('overall'),
                rating_quality=rating.get('quality'),
                rating_communication=rating.get('communication'),
                rating_timeliness=rating.get('timeliness'),
                rating_packaging=rating.get('packaging'),
                comment=data.get('comment'),
                images=data.get('images') or [],
                is_verified=True
            )
            db.session.add(review)
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))

        return success_response({'review': review.to_dict()}, 201, message='Review created successfully')
