"""dohstub package"""
