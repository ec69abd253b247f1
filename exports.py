import csv
import io
import json
from datetime import datetime

from openpyxl import Workbook
from openpyxl.styles import Font
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.pdfgen import canvas
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

EXPORT_HEADERS = ['Date', 'Crop', 'Crop (Yoruba)', 'Market', 'Price', 'Unit', 'Availability', 'Quality', 'Trend']
PDF_ROW_LIMIT = 50


def price_row(price):
    return [
        price.last_updated.strftime('%Y-%m-%d') if price.last_updated else '',
        price.crop_name,
        price.crop_name_yoruba or '',
        price.market_name,
        price.price_value,
        price.price_unit,
        price.availability or '',
        price.quality or '',
        price.trend_direction or ''
    ]


def export_csv(prices, custom_fields=None):
    """custom_fields name extra camelCase keys of CropPrice.to_dict() to append as columns."""
    custom_fields = list(custom_fields or [])
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(EXPORT_HEADERS + custom_fields)
    for price in prices:
        row = price_row(price)
        if custom_fields:
            values = price.to_dict()
            row += ['' if values.get(field) is None else values[field] for field in custom_fields]
        writer.writerow(row)
    data = output.getvalue()
    output.close()
    return data.encode('utf-8')


def export_excel(prices, include_analytics=False, analytics=None):
    wb = Workbook()
    ws = wb.active
    ws.title = 'Crop Prices'

    headers = list(EXPORT_HEADERS)
    headers[4] = 'Price (₦)'
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for column, width in zip('ABCDEFGHI', (12, 15, 15, 20, 12, 15, 12, 10, 10)):
        ws.column_dimensions[column].width = width

    for price in prices:
        row = price_row(price)
        row[0] = price.last_updated
        ws.append(row)

    if include_analytics:
        sheet = wb.create_sheet('Analytics')
        sheet.append(['Crop', 'Average Price', 'Min Price', 'Max Price', 'Records'])
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        for item in analytics or []:
            sheet.append([item['cropName'], item['averagePrice'], item['minPrice'], item['maxPrice'], item['totalRecords']])

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


def export_json(prices, filters, exported_by):
    payload = {
        'metadata': {
            'exportedAt': datetime.utcnow().isoformat(),
            'recordCount': len(prices),
            'filters': filters,
            'exportedBy': exported_by
        },
        'data': [p.to_dict() for p in prices]
    }
    return json.dumps(payload, indent=2, ensure_ascii=False).encode('utf-8')


def export_pdf(prices):
    output = io.BytesIO()
    doc = SimpleDocTemplate(output, pagesize=A4)
    styles = getSampleStyleSheet()
    elements = [
        Paragraph('AgricTech Price Report', styles['Title']),
        Paragraph(f"Generated on: {datetime.utcnow().strftime('%a %b %d %Y')}", styles['Normal']),
        Spacer(1, 12)
    ]

    table_data = [['Crop', 'Market', 'Price', 'Unit', 'Date']] + [
        [p.crop_name, p.market_name, f"NGN {p.price_value:,.0f}", p.price_unit,
         p.last_updated.strftime('%Y-%m-%d') if p.last_updated else '-']
        for p in prices[:PDF_ROW_LIMIT]
    ]
    table = Table(table_data, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2e7d32")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("ALIGN", (0, 0), (-1, -1), "LEFT"),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
        ("BACKGROUND", (0, 1), (-1, -1), colors.whitesmoke),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ]))
    elements.append(table)

    doc.build(elements)
    return output.getvalue()


def training_certificate(user, course, enrollment):
    """Landscape A4 completion certificate."""
    output = io.BytesIO()
    page_width, page_height = landscape(A4)
    pdf = canvas.Canvas(output, pagesize=(page_width, page_height))
    gold = colors.HexColor('#d4af37')
    dark = colors.HexColor('#2c3e50')
    grey = colors.HexColor('#7f8c8d')

    pdf.setStrokeColor(gold)
    pdf.setLineWidth(3)
    pdf.rect(40, 40, page_width - 80, page_height - 80)
    pdf.setLineWidth(1)
    pdf.rect(55, 55, page_width - 110, page_height - 110)

    center = page_width / 2

    def line(text, y, size, color, font='Helvetica'):
        pdf.setFont(font, size)
        pdf.setFillColor(color)
        pdf.drawCentredString(center, y, text)

    line('CERTIFICATE OF COMPLETION', page_height - 130, 28, dark, 'Helvetica-Bold')
    line('AgricTech Training Program', page_height - 160, 16, grey)
    line('This is to certify that', page_height - 215, 18, dark)
    line(user.full_name, page_height - 255, 32, gold, 'Helvetica-Bold')
    line('has successfully completed the course', page_height - 295, 18, dark)
    line(course.title_english, page_height - 335, 24, colors.HexColor('#2980b9'), 'Helvetica-Bold')
    line(f"Score: {enrollment.score or 0:g}%", page_height - 385, 14, grey)
    completed = enrollment.completed_at or datetime.utcnow()
    line(f"Completion Date: {completed.strftime('%d/%m/%Y')}", page_height - 405, 14, grey)
    line('AgricTech Platform - Empowering Nigerian Farmers', 90, 12, grey)
    line(f"Certificate ID: {course.id}-{user.id}-{int(datetime.utcnow().timestamp() * 1000)}", 72, 12, grey)

    pdf.showPage()
    pdf.save()
    return output.getvalue()
